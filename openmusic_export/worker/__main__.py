"""Export worker package entry point.

Allows execution of the export worker via: python -m openmusic_export.worker
"""

import sys

from openmusic_export.worker.consumer import main

if __name__ == "__main__":
    sys.exit(main())
