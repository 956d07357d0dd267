import sys

from botstore.cli import main

sys.exit(main())
