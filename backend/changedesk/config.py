from __future__ import annotations

import os
from datetime import time


DATABASE_URL = os.environ.get("CHANGEDESK_DATABASE_URL", "sqlite:///./changedesk.db")
LOG_LEVEL = os.environ.get("CHANGEDESK_LOG_LEVEL", "INFO").upper()

# Requests are answered within this many working days unless the period overrides it.
RESPONSE_BUSINESS_DAYS = int(os.environ.get("CHANGEDESK_RESPONSE_BUSINESS_DAYS", "5"))
SEAT_RESERVATION_RETRIES = int(os.environ.get("CHANGEDESK_SEAT_RESERVATION_RETRIES", "3"))
NEAR_CAPACITY_THRESHOLD = 90.0
DEFAULT_LOOKBACK_DAYS = 30

CODE_PREFIX = "SOL"
CODE_SUFFIX_LENGTH = 8

TEACHING_DAY_START = time(7, 0)
WEEKDAY_TEACHING_END = time(19, 0)
SATURDAY_TEACHING_END = time(13, 0)
