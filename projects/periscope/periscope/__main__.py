# \projects\periscope\periscope\__main__.py
"""
`python -m periscope …` forwards to the Typer CLI defined in `periscope.live.cli`.
"""

from __future__ import annotations

from periscope.live.cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
