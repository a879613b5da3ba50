"""Outbound messaging channels."""
from channels.sms_gateway import (
    SmsGateway,
    HttpSmsGateway,
    MockSmsGateway,
    create_sms_gateway,
)

__all__ = [
    "SmsGateway", "HttpSmsGateway", "MockSmsGateway", "create_sms_gateway",
]
