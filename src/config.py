"""Application configuration loaded from environment variables.

Secrets and endpoints live here; behaviour knobs live in
``src/punchsync/sync_config.yaml``.
"""

from datetime import datetime
from functools import lru_cache

from pydantic_settings import BaseSettings

from src.punchsync.errors import ConfigurationError


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "PunchSync"
    app_version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production
    run_sync_loop: bool = True  # start the background loop in the app lifespan

    # --- Device controller (source) ---
    source_base_url: str = "http://localhost:3366/WebAPIService.asmx"
    source_json_path: str = "/GetTransactionData"
    source_username: str = ""
    source_password: str = ""
    source_timeout_seconds: float = 30.0

    # --- HR sink ---
    sink_attendance_url: str = "https://people.zoho.in/people/api/attendance"
    sink_employee_url: str = "https://people.zoho.in/api/forms/P_EmployeeView/records"
    sink_timeout_seconds: float = 30.0
    sink_auth_scheme: str = "Zoho-oauthtoken"

    # --- OAuth ---
    oauth_accounts_url: str = "https://accounts.zoho.in"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""  # server-side only, never logged
    oauth_redirect_uri: str = "http://localhost:3000/oauth/callback"
    oauth_scope: str = "ZohoPeople.attendance.ALL,ZohoPeople.forms.READ"
    # Bootstrap tokens; used only when the state store holds none.
    oauth_access_token: str = ""
    oauth_refresh_token: str = ""
    oauth_token_expires_at: datetime | None = None

    # --- State ---
    state_file_path: str = "data/sync_state.json"
    database_url: str = ""  # postgres DSN; takes precedence over the state file
    employee_map_path: str = "config/employee_map.json"
    sync_config_path: str = ""  # override for the bundled sync_config.yaml

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def require_credentials(self) -> None:
        """Fail fast at startup when a required value is missing.

        Raises:
            ConfigurationError: Listing every missing setting.
        """
        required = {
            "SOURCE_BASE_URL": self.source_base_url,
            "SOURCE_USERNAME": self.source_username,
            "SOURCE_PASSWORD": self.source_password,
            "SINK_ATTENDANCE_URL": self.sink_attendance_url,
            "SINK_EMPLOYEE_URL": self.sink_employee_url,
            "OAUTH_CLIENT_ID": self.oauth_client_id,
            "OAUTH_CLIENT_SECRET": self.oauth_client_secret,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(missing=missing)


@lru_cache
def get_settings() -> Settings:
    return Settings()
