import sys

from pagenarrator.cli import main

sys.exit(main())
