import sys

from clawdash.cli import main

sys.exit(main())
