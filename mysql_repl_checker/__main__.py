#!/usr/bin/env python3
"""
Entry point for running mysql_repl_checker as a module.
This file enables: python -m mysql_repl_checker
"""

from .main import main

if __name__ == '__main__':
    main()
