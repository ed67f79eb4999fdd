"""Allow ``python -m sniper_sync``."""

from sniper_sync.cli import main

main()
