"""Allow `python -m caiconnect`."""

from caiconnect.cli import main

if __name__ == "__main__":
    main()
