"""
Managers for assembling a container's environment from its sources.
"""
import os
from typing import Dict, List, Optional

from loguru import logger

from ..PARSERS.env_parser import EnvParser

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class EnvironmentManager:
    """
    Manages the merging of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = ".", default_path: str = DEFAULT_PATH):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        :param default_path: PATH injected before any other source.
        """
        self.base_dir = base_dir
        self.default_path = default_path
        self.parser = EnvParser()

    def build_environment(self,
                          hostname: str,
                          image_env: Optional[List[str]] = None,
                          env_files: Optional[List[str]] = None,
                          explicit_env: Optional[List[str]] = None) -> Dict[str, str]:
        """
        Builds the environment of a container. The host process environment is
        never inherited.

        Order (later sources override earlier ones):
        1. built-in HOSTNAME and PATH defaults
        2. the image's ENV entries
        3. .env files, in the given order
        4. explicit KEY=VALUE entries

        :param hostname: Value of the built-in HOSTNAME variable.
        :param image_env: 'KEY=VALUE' entries from the image config.
        :param env_files: Paths to .env files.
        :param explicit_env: 'KEY=VALUE' entries from the user.
        :return: The merged environment.
        """
        env = {"HOSTNAME": hostname, "PATH": self.default_path}
        env.update(self.parser.parse_entries(image_env or []))

        for env_file in env_files or []:
            file_path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(file_path):
                logger.warning("Env file {} not found, skipping", file_path)
                continue
            env.update(self.parser.parse(file_path))

        env.update(self.parser.parse_entries(explicit_env or []))
        return env
