"""Allow `python -m dualserve`."""

import sys

from dualserve.cli import main

sys.exit(main())
