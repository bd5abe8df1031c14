"""
Application-wide constants for the merch shop
"""

# Reservation statuses (persisted and transmitted as these literal strings)
STATUS_PENDING = 'pending'
STATUS_COLLECTED = 'collected'
STATUS_CANCELLED = 'cancelled'
RESERVATION_STATUSES = (STATUS_PENDING, STATUS_COLLECTED, STATUS_CANCELLED)

# Team/affiliation used when the customer leaves the field blank
DEFAULT_TEAM = 'General'

# File Upload Configuration
MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5MB
IMAGE_MIME_PREFIX = 'image/'

# Image Processing Configuration
IMAGE_QUALITY = 80  # JPEG quality (0-100)
MAX_IMAGE_DIMENSION = 2000  # Longest side in pixels after resize

# Input Validation
MIN_PRICE = 0
MAX_PRICE = 100000
MAX_STOCK = 100000
MAX_QUANTITY = 1000
MAX_ITEM_NAME_LENGTH = 120
MAX_ITEM_DESCRIPTION_LENGTH = 2000
MAX_EMAIL_LENGTH = 120
MAX_NAME_LENGTH = 100
MAX_TEAM_LENGTH = 100
MIN_PASSWORD_LENGTH = 8

# Admin authorization check deadline (seconds); fail closed when exceeded
ADMIN_CHECK_TIMEOUT = 5.0

# Change notification long-poll
CHANGE_POLL_MAX_WAIT = 25.0  # Upper bound on ?wait= for /api/items/changes

# Rate Limiting (requests per time period)
RATE_LIMIT_LOGIN = "5 per minute"
RATE_LIMIT_RESERVE = "10 per minute"
