# sip_calls.py

from datetime import datetime
from typing import Optional

from analyzers.common import SipEvent


def format_call_event(ts: datetime, event: SipEvent) -> Optional[str]:
    """
    Formats a non-REGISTER SIP message as a directional trace line.
    Args:
        ts: Capture timestamp of the message.
        event: The dissected message.
    Returns:
        The trace line, or None when the message carries no method.
    """
    if not event.method:
        return None
    line = event.trace_prefix(ts)
    if event.status_code > 0:
        line += f'<<-{event.to_user:>8} {event.status_code:03} CID:{event.call_id}'
    else:
        line += f'->>{event.to_user:>8} REQ CID:{event.call_id}'
    if event.from_display:
        line += f' From: {event.from_display}'
    if event.sdp_addr:
        line += f' MEDIA {event.sdp_addr}:{event.sdp_port}'
    return line
