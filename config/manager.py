from pathlib import Path
from typing import Dict, Any, Optional, List, Callable
from config.types import AutomationSettings
from formpilot.errors import ConfigurationError
import logging
import os


class EnvironmentManager:
    """
    Environment manager holding the server and automation settings.

    Every setting has a typed default and can be overridden by its upper-case
    environment variable, either exported or listed in a .env file.
    """

    _instance = None

    # List of all settings that are paths
    PATH_SETTINGS = [
        "template_path",
    ]

    # Default settings with their types
    DEFAULT_SETTINGS = {
        # Server
        "server_port": (8000, int),
        # Engine timeouts
        "step_timeout_seconds": (30.0, float),
        "input_timeout_seconds": (120.0, float),
        "placeholder_step_delay_seconds": (0.5, float),
        # Session state lifecycle
        "state_reset_grace_seconds": (300.0, float),
        "state_cleanup_interval_seconds": (5.0, float),
        # Browser driver
        "browser_type": ("chromium", str),
        "browser_headless": (True, bool),
        "viewport_width": (1280, int),
        "viewport_height": (720, int),
        # Pre-authored step templates
        "template_path": ("templates.yaml", str),
        # LLM endpoint
        "llm_api_key": (None, str),
        "llm_base_url": ("https://api.openai.com/v1", str),
        "llm_model": ("gpt-4o-mini", str),
    }

    # Settings that must never be echoed back in full
    SECRET_SETTINGS = ["llm_api_key"]

    # Create mapping dynamically - each setting can be set via its uppercase env var
    ENV_MAPPING = {setting.upper(): setting for setting in DEFAULT_SETTINGS.keys()}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize environment with default values"""
        self.env_variables: Dict[str, str] = {}
        self._providers: List[Callable[[], Dict[str, Any]]] = []
        self.settings: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

        # Initialize settings with default values
        for key, (default_value, _) in self.DEFAULT_SETTINGS.items():
            self.settings[key] = default_value

        self._load_from_env_file()
        self._resolve_paths()

    def _resolve_paths(self):
        """Resolve relative path settings against the project root"""
        project_root = Path(__file__).parent.parent.resolve()
        for key in self.PATH_SETTINGS:
            value = self.settings.get(key)
            if value is not None:
                p = Path(value)
                if not p.is_absolute():
                    p = project_root / p
                self.settings[key] = str(p.resolve())

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
        """Store a variable and update the setting it maps to"""
        self.env_variables[key] = value
        setting_name = self.ENV_MAPPING.get(key)
        if setting_name is None:
            return
        _, target_type = self.DEFAULT_SETTINGS[setting_name]
        try:
            self.settings[setting_name] = self._convert_value(value, target_type)
        except ValueError:
            self.logger.warning(f"Ignoring invalid value for {key}: {value!r}")

    def _env_file_candidates(self) -> List[Path]:
        env_file_paths = [Path.cwd() / ".env"]

        git_root = self._get_git_root()
        if git_root:
            env_file_paths.append(git_root / ".env")

        # Try additional common locations - safely handle home directory
        try:
            env_file_paths.append(Path.home() / ".env")
        except (RuntimeError, OSError):
            pass

        return env_file_paths

    def _load_from_env_file(self):
        """Find and load variables from a .env file"""
        env_file_paths = self._env_file_candidates()

        # Load from the first .env file found
        for env_path in env_file_paths:
            if env_path.exists() and env_path.is_file():
                self.logger.info(f"Loading environment from: {env_path}")
                self._parse_env_file(env_path)
                return

        self.logger.debug(
            "No .env file found, tried: " + ", ".join(str(p) for p in env_file_paths)
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
        except OSError as e:
            self.logger.error(f"Error parsing .env file {env_file_path}: {e}")

    def register_provider(self, provider: Callable[[], Dict[str, Any]]):
        """Register a provider function that returns additional settings"""
        self._providers.append(provider)
        return self

    def load(self):
        """Load all environment information

        Order of precedence (lowest first): defaults, .env file, OS
        environment, registered providers.
        """
        self._load_from_env_file()

        for key, value in os.environ.items():
            if key in self.ENV_MAPPING:
                self._apply_variable(key, value)

        for provider in self._providers:
            try:
                additional_data = provider()
            except Exception as e:
                self.logger.error(f"Error from provider: {e}")
                continue
            for key, value in (additional_data.get("settings") or {}).items():
                if key in self.settings:
                    self.settings[key] = value

        self._resolve_paths()
        return self

    def get_setting(self, name: str, default: Any = None) -> Any:
        """Get a setting value by name"""
        value = self.settings.get(name)
        return default if value is None else value

    def require_setting(self, name: str) -> Any:
        """Get a setting that must be configured

        Raises:
            ConfigurationError: If the setting is unknown or unset
        """
        if name not in self.DEFAULT_SETTINGS:
            raise ConfigurationError(f"Unknown setting: {name}")
        value = self.settings.get(name)
        if value is None or value == "":
            raise ConfigurationError(
                f"Missing required setting '{name}' (set {name.upper()} in the environment or .env)"
            )
        return value

    def get_server_port(self) -> int:
        """Get the HTTP server port"""
        return self.get_setting("server_port", 8000)

    def get_automation_settings(self) -> AutomationSettings:
        """Build validated automation settings from the current values

        Raises:
            ConfigurationError: If a value fails validation
        """
        fields = {
            key: value
            for key, value in self.settings.items()
            if key in AutomationSettings.model_fields and value is not None
        }
        try:
            return AutomationSettings(**fields)
        except ValueError as e:
            raise ConfigurationError(f"Invalid automation settings: {e}") from e

    def get_all_configuration(self) -> Dict[str, Any]:
        """Get all settings with secrets masked"""
        settings = dict(self.settings)
        for key in self.SECRET_SETTINGS:
            if settings.get(key):
                settings[key] = "***"

        default_settings_serializable = {}
        for key, (default_value, type_class) in self.DEFAULT_SETTINGS.items():
            default_settings_serializable[key] = {
                "default_value": default_value,
                "type": type_class.__name__,
            }

        return {
            "settings": settings,
            "default_settings": default_settings_serializable,
            "path_settings": list(self.PATH_SETTINGS),
            "env_mapping": dict(self.ENV_MAPPING),
        }

    def reset_setting(self, setting_name: str) -> Dict[str, Any]:
        """Reset a specific setting to its default value"""
        if setting_name not in self.DEFAULT_SETTINGS:
            return {"success": False, "error": f"Unknown setting: {setting_name}"}

        default_value, _ = self.DEFAULT_SETTINGS[setting_name]
        self.settings[setting_name] = default_value
        if setting_name in self.PATH_SETTINGS:
            self._resolve_paths()
        return {"success": True, "message": f"Reset {setting_name} to default value: {default_value}"}


# Create singleton instance
env_manager = EnvironmentManager()
