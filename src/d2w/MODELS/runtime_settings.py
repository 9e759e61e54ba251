"""
Runtime configuration loaded from D2W_* environment variables and .env files.
"""
import os
from typing import ClassVar, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from ..MANAGERS.environment_manager import DEFAULT_PATH


class RuntimeSettings(BaseModel):
    """
    Settings shared by the stager, the network manager and execution sessions.
    """
    network: str = "bridge"
    subnet: str = "172.17.0.0/16"
    bind_host: str = "0.0.0.0"
    entry_point: str = "_start"
    staging_dir: Optional[str] = None
    default_path: str = DEFAULT_PATH
    log_level: str = "INFO"

    ENV_PREFIX: ClassVar[str] = "D2W_"

    @classmethod
    def from_env(cls,
                 env_file: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None) -> "RuntimeSettings":
        """
        Builds settings from the process environment.

        :param env_file: Optional .env file loaded into os.environ first (existing
                         variables are not overridden).
        :param environ: Mapping to read instead of os.environ.
        :return: The settings, with defaults for anything unset.
        """
        if env_file:
            load_dotenv(env_file, override=False)
        source = os.environ if environ is None else environ

        values = {}
        for name in cls.model_fields:
            key = cls.ENV_PREFIX + name.upper()
            if key in source and source[key] != "":
                values[name] = source[key]
        return cls(**values)
