import sys

from terminus_runner.main import main

sys.exit(main())
