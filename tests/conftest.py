import io
from datetime import datetime, timedelta, timezone

import pytest

from analyzers.sip_registration import RegistrationTracker

T0 = datetime(2025, 1, 28, 10, 0, 0, tzinfo=timezone.utc)

UA_ADDR = '10.0.0.1'
REGISTRAR_ADDR = '10.0.0.254'


def sip_fields(method='REGISTER', from_user='alice', seq=1, status_code='', expires='',
               from_addr=UA_ADDR, to_addr=REGISTRAR_ADDR, udp_stream=0, auth_user='',
               to_user='', call_id='', from_display='', sdp_addr='', sdp_port=''):
    """The 16 positional columns as tshark prints them after the timestamp"""
    return [from_addr, to_addr, from_user, 'example.com', to_user, 'example.com', method, str(seq),
            str(status_code), str(expires), sdp_addr, sdp_port, call_id, from_display, str(udp_stream),
            auth_user]


def at(seconds):
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def make_fields():
    return sip_fields


@pytest.fixture
def clock():
    return at


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def diagnostic():
    return io.StringIO()


@pytest.fixture
def tracker(output, diagnostic):
    return RegistrationTracker(output=output, diagnostic=diagnostic)


@pytest.fixture
def trace(output):
    """Returns the non-blank lines printed so far"""
    def _trace():
        return [line for line in output.getvalue().splitlines() if line.strip()]
    return _trace


@pytest.fixture
def register(tracker):
    """
    Feeds one REGISTER message to the tracker.
    Requests travel from the UA to the registrar, responses the other way round.
    """
    def _register(seconds, code=0, seq=1, expires=3600, user='alice', ua_addr=UA_ADDR, stream=0,
                  auth_user=''):
        if code:
            fields = sip_fields(from_user=user, seq=seq, status_code=code, expires=expires,
                                from_addr=REGISTRAR_ADDR, to_addr=ua_addr, udp_stream=stream)
        else:
            fields = sip_fields(from_user=user, seq=seq, expires=expires, from_addr=ua_addr,
                                to_addr=REGISTRAR_ADDR, udp_stream=stream, auth_user=auth_user)
        tracker.analyze(at(seconds), fields)
    return _register
