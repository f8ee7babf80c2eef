"""
CalmText - SMS Package

Phone number privacy helpers and the outbound transport
(dummy or Twilio). Import the transport from calmtext.sms.transport.
"""

from .privacy import mask_phone_number, validate_phone_number, format_phone_number

__all__ = [
    "mask_phone_number",
    "validate_phone_number",
    "format_phone_number",
]
