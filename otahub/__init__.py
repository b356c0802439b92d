"""OTA Hub: remote IoT device management server.

Registers devices against user accounts, stores firmware builds, gates them
through a verification pipeline and rolls approved builds out to devices.

Quickstart::

    from otahub.db import init_db
    init_db()                   # reads OTAHUB_DATA_DIR (default: ./data)

    # then serve the API
    uvicorn otahub.server:app --port 8600
"""

__version__ = "0.1.0"
