import sys

from nvstats.cli.main import main

sys.exit(main())
