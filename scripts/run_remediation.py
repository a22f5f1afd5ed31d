#!/usr/bin/env python3
# run_remediation.py
# Entry point for RMM component jobs that invoke a script path rather than
# the installed console script.
import sys

from agentfix.cli import main

if __name__ == "__main__":
    main(["run", *sys.argv[1:]])
