"""Allow ``python -m vmbuilder``."""

import sys

from vmbuilder import cli

sys.exit(cli.main())
