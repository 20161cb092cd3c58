import sys

from safeflow.cli import main

sys.exit(main())
