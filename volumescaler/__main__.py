import sys

from volumescaler.main import main

sys.exit(main())
