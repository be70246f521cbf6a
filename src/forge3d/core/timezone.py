"""UTC timezone enforcement.

This module sets the TZ environment variable to UTC so that epoch-second
timestamps written by the task pipeline are interpreted the same everywhere.
"""

import os

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"
