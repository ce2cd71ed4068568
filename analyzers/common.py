import logging
from datetime import datetime, timezone
from typing import NamedTuple, Optional

TIME_FMT = '%Y-%m-%d %H:%M:%S.%f'
EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

# Number of tab separated fields after the timestamp column
SIP_EVENT_FIELDS = 16

U16_MAX = 0xFFFF
U32_MAX = 0xFFFFFFFF


def parse_number(value: str, max_value: int = U16_MAX) -> int:
    """
    Parses an unsigned decimal field the way tshark prints it.
    Args:
        value: Raw field text, possibly empty.
        max_value: Largest accepted value for the field width.
    Returns:
        The parsed number, or 0 when the field is empty, malformed or out of range.
    """
    try:
        digits = value.strip()
    except AttributeError:
        return 0
    if digits.startswith('+'):
        digits = digits[1:]
    # Plain ASCII digits only
    if not (digits.isascii() and digits.isdigit()):
        return 0
    number = int(digits)
    if number > max_value:
        return 0
    return number


def format_timestamp(ts: datetime) -> str:
    """Local time with millisecond precision."""
    return ts.astimezone().strftime(TIME_FMT)[:-3]


def elapsed_seconds(later: datetime, earlier: datetime) -> int:
    # Truncated towards zero, like a whole-second duration
    return int((later - earlier).total_seconds())


def elapsed_minutes(later: datetime, earlier: datetime) -> int:
    return int((later - earlier).total_seconds() / 60)


class SipEvent(NamedTuple):
    """Typed view of one dissected SIP message"""
    from_addr: str
    to_addr: str
    from_user: str
    from_host: str
    to_user: str
    to_host: str
    method: str
    seq: int
    status_code: int
    expires: int
    sdp_addr: str
    sdp_port: str
    call_id: str
    from_display: str
    udp_stream: int
    auth_user: str

    @classmethod
    def from_fields(cls, fields) -> 'SipEvent':
        ''' Builds an event from the positional tshark columns '''
        cols = list(fields[:SIP_EVENT_FIELDS])
        if len(cols) < SIP_EVENT_FIELDS:
            logging.debug(f'Short SIP event with {len(cols)} fields, padding to {SIP_EVENT_FIELDS}')
            cols.extend([''] * (SIP_EVENT_FIELDS - len(cols)))
        cols = [col if col is not None else '' for col in cols]
        return cls(from_addr=cols[0],
                   to_addr=cols[1],
                   from_user=cols[2],
                   from_host=cols[3],
                   to_user=cols[4],
                   to_host=cols[5],
                   method=cols[6],
                   seq=parse_number(cols[7]),
                   status_code=parse_number(cols[8]),
                   expires=parse_number(cols[9]),
                   sdp_addr=cols[10],
                   sdp_port=cols[11],
                   call_id=cols[12],
                   from_display=cols[13],
                   udp_stream=parse_number(cols[14], U32_MAX),
                   auth_user=cols[15])

    def trace_prefix(self, ts: datetime) -> str:
        return f'{format_timestamp(ts)} {self.method:<8} {self.from_user:<10} '


class ProtocolAnalyzer:
    ''' Base class for analyzers fed from tshark field output.
        Subclasses declare the fields they need and consume one event per line.
    '''
    protocol_name: Optional[str] = None

    def add_protocol_fields(self, tshark_args: list) -> list:
        raise NotImplementedError

    def analyze(self, ts: datetime, fields) -> None:
        raise NotImplementedError

    def finalize(self) -> None:
        raise NotImplementedError
