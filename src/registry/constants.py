"""Centralized constants for the registry module.

Field bounds and table names live here to avoid literals scattered
across modules.
"""

# Record field bounds (inclusive unless noted)
NAME_MAX_LENGTH = 64
DETAILS_MAX_LENGTH = 128
CATEGORY_MAX_COUNT = 10
CATEGORY_MAX_LENGTH = 32
SIZE_MIN = 1
SIZE_LIMIT = 1_000_000_000  # exclusive
PAUSE_REASON_MAX_LENGTH = 128

# Storage tables
RECORDS_TABLE = "records"
VIEWERS_TABLE = "viewers"
PERMISSIONS_TABLE = "permissions"
MONITORS_TABLE = "monitors"
SCHEDULES_TABLE = "schedules"
PENDING_TABLE = "pending"
ATTESTATIONS_TABLE = "attestations"

# Scheduled operation categories
TRANSFER_OPERATION = "transfer"
