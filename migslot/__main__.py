import sys

from migslot.cli import main

sys.exit(main())
