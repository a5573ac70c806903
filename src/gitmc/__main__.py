"""Allow ``python -m gitmc``."""

import sys

from .app import main

sys.exit(main())
