import sys

from ralph_wiggum.core import main

sys.exit(main())
