from dishka import Provider, Scope, provide
from pydantic import ValidationError

from core.environment.config import Settings
from core.exceptions import ConfigurationException


class EnvironmentProvider(Provider):
    """
    Provider for environment configuration.
    """

    component = "environment"
    scope = Scope.APP

    @provide
    def get_environment(self) -> Settings:
        """
        Provide application settings.

        Returns
        -------
        Settings
            Application settings instance

        Raises
        ------
        ConfigurationException
            If the configuration is missing or invalid
        """
        try:
            return Settings()
        except ValidationError as e:
            raise ConfigurationException(f"error.config.invalid: {e}") from e
