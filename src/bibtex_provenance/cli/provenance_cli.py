#!/usr/bin/env python3
"""CLI entry point for bibtex-provenance command.

Resolves generated citations and manages their provenance tiers.
"""

import sys


def main() -> None:
    """Entry point for bibtex-provenance command."""
    from bibtex_provenance.commands import main as provenance_main

    sys.exit(provenance_main())


if __name__ == "__main__":
    main()
