import sys

from floorsync.cli import main


sys.exit(main())
