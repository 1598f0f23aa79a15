"""Module entrypoint for `python -m fleetops`.

Defers to the Typer app entrypoint so we stay consistent with the `fleetops` console script.
"""

from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    main()
