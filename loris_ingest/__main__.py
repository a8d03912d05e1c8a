"""Allow ``python -m loris_ingest``."""

from loris_ingest.cli import main

if __name__ == "__main__":  # pragma: no cover
    main()
