from slowapi import Limiter
from slowapi.util import get_remote_address

# Control signals are keyed by client IP
limiter = Limiter(key_func=get_remote_address)

CONTROL_SIGNAL_LIMIT = "30/minute"
SUBMIT_LIMIT = "60/minute"
