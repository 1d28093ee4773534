"""Allow ``python -m romcurator``."""

import sys

from .cli import main

sys.exit(main())
