from pathlib import Path
from typing import Dict, Any, Optional, List, Callable
from config.types import RepositoryInfo, AdtConnectionConfig
import logging
import os


class EnvironmentManager:
    """
    Environment manager holding the ADT backend parameters and the typed
    engine settings shared by every tool in the server.
    """

    _instance = None

    # List of all settings that are paths
    PATH_SETTINGS = [
        "git_root",
        "adt_lock_registry_path",
    ]

    # Default settings with their types
    DEFAULT_SETTINGS = {
        "git_root": (None, str),
        # Transport settings
        "adt_request_timeout": (60, int),
        "adt_max_retries": (2, int),
        # Lock registry for recovering locks left behind by crashed runs
        "adt_lock_registry_enabled": (True, bool),
        "adt_lock_registry_path": (".locks/active-locks.json", str),
        # "halt" stops on a failed name validation, "proceed" continues to create
        "adt_validation_failure_policy": ("halt", str),
    }

    # Default ADT connection settings with their types
    DEFAULT_ADT_SETTINGS = {
        "language": ("EN", str),
        "verify_ssl": ("true", str),
    }

    # Create mapping dynamically - each setting can be set via its uppercase env var
    ENV_MAPPING = {setting.upper(): setting for setting in DEFAULT_SETTINGS.keys()}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize environment with default values"""
        self.repository_info = RepositoryInfo()
        self.env_variables: Dict[str, str] = {}
        self._providers: List[Callable[[], Dict[str, Any]]] = []
        self.adt_parameters: Dict[str, Any] = {}
        self.settings: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

        for key, (default_value, _) in self.DEFAULT_SETTINGS.items():
            self.settings[key] = default_value

        self._load_from_env_file()
        self._sync_settings_to_repo()
        self._resolve_path_settings()

    def _resolve_path_settings(self):
        """Resolve relative path settings against the working directory"""
        for key in self.PATH_SETTINGS:
            value = self.settings.get(key)
            if value is not None:
                p = Path(value)
                if not p.is_absolute():
                    p = Path.cwd() / p
                self.settings[key] = str(p.resolve())

    def _sync_settings_to_repo(self):
        """Point the repository info at the configured git root"""
        if git_root := self.settings.get("git_root"):
            self.repository_info.git_root = git_root

    def _get_git_root(self) -> Optional[Path]:
        """Try to determine the git root directory

        Returns:
            Path to the git root directory or None if not found
        """
        dir_to_check = Path.cwd()
        for _ in range(10):  # Limit the search depth
            git_dir = dir_to_check / ".git"
            if git_dir.exists() and git_dir.is_dir():
                return dir_to_check

            parent_dir = dir_to_check.parent
            if parent_dir == dir_to_check:  # Reached the root
                break
            dir_to_check = parent_dir

        return None

    def _convert_value(self, value: str, target_type: type) -> Any:
        """Convert string value to target type"""
        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")
        return target_type(value)

    def _apply_variable(self, key: str, value: str):
        """Route one KEY=value pair to settings or ADT parameters"""
        self.env_variables[key] = value

        if key in self.ENV_MAPPING:
            setting_name = self.ENV_MAPPING[key]
            _, target_type = self.DEFAULT_SETTINGS[setting_name]
            try:
                self.settings[setting_name] = self._convert_value(value, target_type)
            except ValueError:
                self.logger.warning(
                    f"Ignoring invalid value for {key}: {value!r} (expected {target_type.__name__})"
                )
        # Handle ADT_ prefixed variables
        elif key.startswith("ADT_"):
            param_name = key[4:].lower()
            self.adt_parameters[param_name] = value

    def _load_from_env_file(self):
        """Find and load variables from a .env file"""
        env_file_paths = []

        if self.repository_info.git_root:
            env_file_paths.append(Path(self.repository_info.git_root) / ".env")

        env_file_paths.append(Path.cwd() / ".env")

        try:
            env_file_paths.append(Path.home() / ".env")
        except (RuntimeError, OSError):
            # Skip home directory if it can't be determined
            pass

        if not self.repository_info.git_root:
            git_root = self._get_git_root()
            if git_root:
                env_file_paths.append(git_root / ".env")

        for env_path in env_file_paths:
            if env_path.exists() and env_path.is_file():
                self.logger.info(f"Loading environment from: {env_path}")
                self._parse_env_file(env_path)
                return

        self.logger.debug(
            "No .env file found. Tried: " + ", ".join(str(p) for p in env_file_paths)
        )

    def _parse_env_file(self, env_file_path: Path):
        """Parse a .env file and load variables into environment"""
        try:
            with open(env_file_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        key, value = line.split("=", 1)
                        key = key.strip()
                        value = value.strip()

                        # Remove quotes if present
                        if (value.startswith('"') and value.endswith('"')) or (
                            value.startswith("'") and value.endswith("'")
                        ):
                            value = value[1:-1]

                        self._apply_variable(key, value)

            self._sync_settings_to_repo()

        except OSError as e:
            self.logger.error(f"Error parsing .env file {env_file_path}: {e}")

    def register_provider(self, provider: Callable[[], Dict[str, Any]]):
        """Register a provider function that returns additional environment data"""
        self._providers.append(provider)
        return self

    def load(self):
        """Load all environment information"""
        self._load_from_env_file()

        for key, value in os.environ.items():
            self._apply_variable(key, value)

        self._sync_settings_to_repo()

        # Call all registered providers
        for provider in self._providers:
            try:
                additional_data = provider()
            except Exception as e:
                self.logger.error(f"Error from provider: {e}")
                continue

            if git_root := additional_data.get("repository", {}).get("git_root"):
                self.settings["git_root"] = git_root

            if adt_params := additional_data.get("adt_parameters", {}):
                for key, value in adt_params.items():
                    self.adt_parameters[key] = value

            if settings := additional_data.get("settings", {}):
                for key, value in settings.items():
                    if key in self.settings:
                        self.settings[key] = value

        self._sync_settings_to_repo()
        self._resolve_path_settings()

        return self

    def get_setting(self, name: str, default: Any = None) -> Any:
        """Get a setting value by name"""
        return self.settings.get(name, default)

    def get_git_root(self) -> Optional[str]:
        """Get git root directory"""
        return self.get_setting("git_root")

    def get_adt_parameters(self) -> Dict[str, Any]:
        """Get ADT parameters with defaults applied"""
        result = {}
        for key, (default_value, _) in self.DEFAULT_ADT_SETTINGS.items():
            result[key] = default_value

        result.update(self.adt_parameters)

        return result

    def get_adt_parameter(self, name: str, default: Any = None) -> Any:
        """Get a specific ADT parameter"""
        return self.get_adt_parameters().get(name, default)

    def get_adt_connection_config(self) -> AdtConnectionConfig:
        """Build the typed connection config for the configured backend

        Raises:
            ValueError: If no ADT URL is configured
        """
        return AdtConnectionConfig.from_parameters(
            self.get_adt_parameters(), self.settings
        )

    def is_lock_registry_enabled(self) -> bool:
        """Check if outstanding locks are persisted for recovery"""
        return self.get_setting("adt_lock_registry_enabled", True)

    def get_lock_registry_path(self) -> str:
        """Get the path of the persisted lock registry"""
        return self.get_setting("adt_lock_registry_path", ".locks/active-locks.json")

    def get_validation_failure_policy(self) -> str:
        """Get the configured policy for failed name validations"""
        policy = str(self.get_setting("adt_validation_failure_policy", "halt")).lower()
        if policy not in ("halt", "proceed"):
            self.logger.warning(
                f"Unknown validation failure policy '{policy}', falling back to 'halt'"
            )
            return "halt"
        return policy


# Create a global instance
env_manager = EnvironmentManager()
