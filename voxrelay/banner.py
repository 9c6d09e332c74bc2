"""ASCII banner printed by ``voxrelay serve``."""

from __future__ import annotations

from rich.console import Console

from voxrelay import __version__

_CLR_GREEN = "#00ff88"
_CLR_DIM = "#555555"

_LOGO = r"""
 _  _  __  _  _  ____  ____  __     __   _  _
/ )( \/  \( \/ )(  _ \(  __)(  )   / _\ ( \/ )
\ \/ (  O ))  (  )   / ) _) / (_/\/    \ )  /
 \__/ \__/(_/\_)(__\_)(____)\____/\_/\_/(__/
"""


def print_banner(console: Console) -> None:
    """Print the voxrelay banner with version.

    Args:
        console: Rich console for output (should be stderr).
    """
    for line in _LOGO.rstrip("\n").split("\n"):
        console.print(f"[{_CLR_GREEN}]{line}[/{_CLR_GREEN}]", highlight=False)
    console.print(f"[{_CLR_DIM}]  v{__version__}  ·  voice detection relay[/{_CLR_DIM}]", highlight=False)
    console.print()
