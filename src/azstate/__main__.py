"""Module entrypoint for ``python -m azstate`` CLI usage."""

from .cli import main

if __name__ == "__main__":
    main()
