"""Allow ``python -m fersk``."""

from fersk.main import main

if __name__ == "__main__":
    raise SystemExit(main())
