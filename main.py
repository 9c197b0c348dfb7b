"""
transitcast - command line entry point

Runs the CLI from a source checkout without installing the package.
"""

import os
import sys

# Add the src tree to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "src"))

from transitcast.cli import main


if __name__ == '__main__':
    main()
