"""Allow ``python -m provswitch``."""

from provswitch.cli.cli import main

if __name__ == "__main__":
    main()
