"""Entry point for ``python -m jobcatalog``."""
from jobcatalog.cli import main

if __name__ == "__main__":
    main()
