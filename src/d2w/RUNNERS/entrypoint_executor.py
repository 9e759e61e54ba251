"""
Utilities for resolving the argv handed to the sandboxed program.
"""
from typing import List, Optional


class EntrypointExecutor:
    """
    Handles the merging of ENTRYPOINT, CMD and a run-time override according to Docker rules.
    """
    def get_full_command(self,
                         entrypoint: List[str],
                         cmd: List[str],
                         override: Optional[List[str]] = None) -> List[str]:
        """
        Resolves the argv of a container.

        Precedence: explicit override, then entrypoint + cmd, then cmd, then [].

        :param entrypoint: The image ENTRYPOINT list.
        :param cmd: The image CMD list.
        :param override: Command given at run time; replaces both when non-empty.
        :return: A new argv list.
        """
        if override:
            return list(override)
        if entrypoint:
            return list(entrypoint) + list(cmd)
        return list(cmd)
