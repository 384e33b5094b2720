"""Entry point for running the relay as module: python -m bridgerelay"""

import sys

from bridgerelay.main import main

if __name__ == "__main__":
    sys.exit(main())
