#!/usr/bin/env python3
"""
arxiv-reader - Main entry point

Keeps a local replica of the arXiv metadata feed and reports new articles
and updates of bookmarked ones. See ``python main.py --help``.
"""

import sys

from arxiv_reader.cli import main


if __name__ == "__main__":
    sys.exit(main())
