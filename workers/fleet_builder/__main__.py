import sys

from fleet_builder.cli import main

sys.exit(main())
