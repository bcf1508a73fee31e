import sys

from secret_sidecar.cli import main

sys.exit(main())
