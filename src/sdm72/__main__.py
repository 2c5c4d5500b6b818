import sys

from sdm72.cli import main

sys.exit(main())
