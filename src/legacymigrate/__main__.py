import sys

from legacymigrate.cli import main

sys.exit(main())
