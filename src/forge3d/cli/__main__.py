"""CLI entry point for forge3d.cli module.

Enables execution via: python -m forge3d.cli
"""

from forge3d.cli.resume_polls import main

if __name__ == "__main__":
    main()
