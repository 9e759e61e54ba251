"""
Utilities for expanding ${VAR} references in descriptor files.
"""
import re
from typing import Mapping

_PATTERN = re.compile(r'\$\{([^}:]+)(?::(-|\+)([^}]*))?\}')


class EnvironmentInterpolator:
    """
    Expands ${VAR}, ${VAR:-default} and ${VAR:+value} references.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str], strict: bool = False) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The variables available for expansion.
        :param strict: Raise on an unset ${VAR} instead of expanding it to ''.
        :return: The interpolated string.
        :raises KeyError: In strict mode, if a plain ${VAR} is unset.
        """
        def replace(match):
            var_name = match.group(1)
            modifier = match.group(2)
            alt_value = match.group(3)
            value = context.get(var_name)

            if modifier == '-':
                return value if value else alt_value
            if modifier == '+':
                return alt_value if value else ''
            if value is None:
                if strict:
                    raise KeyError(f"Variable {var_name} not found in context")
                return ''
            return value

        return _PATTERN.sub(replace, template)
