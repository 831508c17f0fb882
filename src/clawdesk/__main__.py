"""Allow `python -m clawdesk` to run the gateway CLI."""

import sys

from clawdesk.main import main

sys.exit(main())
