"""Allow ``python -m platform_verify``."""

from platform_verify.cli import main

main()
