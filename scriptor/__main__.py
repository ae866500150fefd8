import sys

from scriptor.cli import main

sys.exit(main())
