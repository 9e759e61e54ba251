"""
Parsers for environment definitions: .env files and KEY=VALUE entries.
"""
import io
from typing import Dict, Iterable

from dotenv import dotenv_values


class EnvParser:
    """
    Parser for environment variable sources.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        Args:
            env_path (str): Path to the .env file.

        Returns:
            Dict[str, str]: Dictionary of environment variables.
        """
        with open(env_path, 'r') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses .env content. Quotes, comments and 'export' prefixes are handled
        by python-dotenv; keys without a value are dropped.
        """
        values = dotenv_values(stream=io.StringIO(content), interpolate=False)
        return {key: value for key, value in values.items() if value is not None}

    @staticmethod
    def parse_entries(entries: Iterable[str]) -> Dict[str, str]:
        """
        Parses image- or CLI-style 'KEY=VALUE' entries.

        Only the first '=' separates key and value. Entries without '=' or with
        an empty key are skipped; later entries overwrite earlier ones.
        """
        env = {}
        for entry in entries:
            key, sep, value = entry.partition('=')
            key = key.strip()
            if not sep or not key:
                continue
            env[key] = value
        return env
