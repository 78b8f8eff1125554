from fastapi import APIRouter
from dishka.integrations.fastapi import inject
from dishka import FromComponent
from typing import Annotated
from monitoring.schemas import (
    AlertStatesResponse,
    BalancesResponse,
    ReportResponse,
    TransportsResponse
)
from monitoring.usecases import (
    GetAlertStatesUseCase,
    GetBalancesUseCase,
    GetDailyReportUseCase,
    GetTransportHealthUseCase
)

router = APIRouter(
    prefix="/api",
    tags=["Monitoring"]
)


@router.get("/balances", response_model=BalancesResponse)
@inject
async def get_balances(
    use_case: Annotated[
        GetBalancesUseCase, FromComponent("monitoring")
    ],
    network: str | None = None
) -> BalancesResponse:
    """
    Get last known balances of all monitored entities.

    Parameters
    ----------
    use_case : GetBalancesUseCase
        Use case for listing balances
    network : str | None
        Optional network filter

    Returns
    -------
    BalancesResponse
        Balances in configuration order
    """
    return await use_case(network=network)


@router.get("/alerts", response_model=AlertStatesResponse)
@inject
async def get_alert_states(
    use_case: Annotated[
        GetAlertStatesUseCase, FromComponent("monitoring")
    ]
) -> AlertStatesResponse:
    """
    Get low balance alert state of entities with a threshold.
    """
    return await use_case()


@router.get("/report", response_model=ReportResponse)
@inject
async def get_report(
    use_case: Annotated[
        GetDailyReportUseCase, FromComponent("monitoring")
    ]
) -> ReportResponse:
    """
    Get balance changes since the daily baseline.

    Parameters
    ----------
    use_case : GetDailyReportUseCase
        Use case for the on-demand report

    Returns
    -------
    ReportResponse
        Per-entity deltas
    """
    return await use_case()


@router.get("/transports/{network}", response_model=TransportsResponse)
@inject
async def get_transports(
    network: str,
    use_case: Annotated[
        GetTransportHealthUseCase, FromComponent("monitoring")
    ]
) -> TransportsResponse:
    """
    Get RPC endpoint health of a network.

    Parameters
    ----------
    network : str
        Network name
    use_case : GetTransportHealthUseCase
        Use case for endpoint health

    Returns
    -------
    TransportsResponse
        Endpoint health in configuration order
    """
    return await use_case(network=network)
