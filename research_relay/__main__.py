import sys

from research_relay.cli import main

sys.exit(main())
