"""Allow running ftpmon as ``python -m ftpmon``."""

import sys

from ftpmon.main import main

sys.exit(main())
