"""Entry point for `python -m peso_payroll`."""

import sys

from peso_payroll.cli import main

if __name__ == "__main__":
    sys.exit(main())
