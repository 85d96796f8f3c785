"""Allow ``python -m raf``."""

from raf.cli import main

main()
