import logging
from decimal import Context, Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from core.exceptions import ReadFailedException
from core.redis.providers import CacheService
from monitoring.entities import MonitoredEntity
from monitoring.transport import TransportRegistry

NATIVE_DECIMALS = 18
DEFAULT_TOKEN_DECIMALS = 18

# uint256 has at most 78 digits; conversions must stay exact.
_PRECISION = Context(prec=100)

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class NativeQuery(BaseModel):
    kind: Literal["native"] = "native"
    address: str

    model_config = ConfigDict(frozen=True)


class TokenQuery(BaseModel):
    kind: Literal["token"] = "token"
    address: str
    contract: str

    model_config = ConfigDict(frozen=True)


BalanceQuery = NativeQuery | TokenQuery


def query_for(entity: MonitoredEntity) -> BalanceQuery:
    """
    Map an entity to the protocol call reading its balance.
    """
    if entity.is_native:
        return NativeQuery(address=entity.address)
    return TokenQuery(address=entity.address, contract=entity.contract)


def to_decimal(raw: int, decimals: int) -> Decimal:
    """
    Convert a raw integer amount to a decimal amount.

    Parameters
    ----------
    raw : int
        Amount in the smallest unit
    decimals : int
        Decimal precision of the asset

    Returns
    -------
    Decimal
        Exact decimal amount
    """
    return Decimal(int(raw)).scaleb(-decimals, context=_PRECISION)


class BalanceReader:
    """
    Reads the current balance of a monitored entity.

    Parameters
    ----------
    transports : TransportRegistry
        Fallback transports of all networks
    cache_service : CacheService
        Cache for token decimals
    logger : logging.Logger
        Logger instance
    """

    def __init__(
        self,
        transports: TransportRegistry,
        cache_service: CacheService,
        logger: logging.Logger
    ):
        self.transports = transports
        self.cache = cache_service
        self.logger = logger
        self._decimals: dict[str, int] = {}

    async def read(self, entity: MonitoredEntity) -> Decimal:
        """
        Read the balance of an entity.

        Parameters
        ----------
        entity : MonitoredEntity
            Entity to read

        Returns
        -------
        Decimal
            Balance in whole units of the asset

        Raises
        ------
        ReadFailedException
            If the balance could not be read, wrapping the transport
            or decoding error
        """
        try:
            match query_for(entity):
                case NativeQuery(address=address):
                    raw = await self._read_native(entity.network, address)
                    decimals = NATIVE_DECIMALS
                case TokenQuery(address=address, contract=contract):
                    raw = await self._read_token(entity.network, address, contract)
                    decimals = await self._token_decimals(entity.network, contract)
        except Exception as e:
            raise ReadFailedException(entity.key, e) from e

        return to_decimal(raw, decimals)

    async def _read_native(self, network: str, address: str) -> int:
        checksum_address = AsyncWeb3.to_checksum_address(address)

        async def request(web3: AsyncWeb3) -> int:
            return await web3.eth.get_balance(checksum_address)

        return await self.transports.query(network, request)

    async def _read_token(self, network: str, address: str, contract: str) -> int:
        checksum_address = AsyncWeb3.to_checksum_address(address)
        checksum_contract = AsyncWeb3.to_checksum_address(contract)

        async def request(web3: AsyncWeb3) -> int:
            token = web3.eth.contract(address=checksum_contract, abi=ERC20_ABI)
            return await token.functions.balanceOf(checksum_address).call()

        return await self.transports.query(network, request)

    async def _token_decimals(self, network: str, contract: str) -> int:
        """
        Get token decimals from memory, cache or the contract.

        Contracts that do not implement ``decimals()`` fall back to
        18 decimals; transport failures propagate.
        """
        key = f"decimals:{network}:{contract}"
        if key in self._decimals:
            return self._decimals[key]

        cached = await self.cache.get(key)
        if cached and "decimals" in cached:
            self._decimals[key] = int(cached["decimals"])
            return self._decimals[key]

        checksum_contract = AsyncWeb3.to_checksum_address(contract)

        async def request(web3: AsyncWeb3) -> int | None:
            token = web3.eth.contract(address=checksum_contract, abi=ERC20_ABI)
            try:
                return await token.functions.decimals().call()
            except (ContractLogicError, BadFunctionCallOutput):
                return None

        decimals = await self.transports.query(network, request)
        if decimals is None:
            self.logger.warning(
                f"[{network}] Token {contract} does not report decimals, "
                f"using {DEFAULT_TOKEN_DECIMALS}"
            )
            self._decimals[key] = DEFAULT_TOKEN_DECIMALS
            return DEFAULT_TOKEN_DECIMALS

        self._decimals[key] = int(decimals)
        await self.cache.set(key, {"decimals": int(decimals)}, ttl=86400 * 7)
        return self._decimals[key]
