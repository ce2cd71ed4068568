from analyzers.common import SipEvent
from analyzers.sip_calls import format_call_event


def test_request_line(make_fields, clock):
    event = SipEvent.from_fields(make_fields(method='INVITE', to_user='bob', call_id='abc@host'))
    line = format_call_event(clock(0), event)
    assert 'INVITE   alice      ->>     bob REQ CID:abc@host' in line


def test_response_line(make_fields, clock):
    event = SipEvent.from_fields(make_fields(method='INVITE', to_user='bob', status_code=180, call_id='abc@host'))
    line = format_call_event(clock(0), event)
    assert line.endswith('<<-     bob 180 CID:abc@host')


def test_display_name_and_media(make_fields, clock):
    event = SipEvent.from_fields(make_fields(method='INVITE', to_user='bob', call_id='abc', from_display='"Alice"',
                                             sdp_addr='10.0.0.1', sdp_port='4000'))
    line = format_call_event(clock(0), event)
    assert line.endswith('REQ CID:abc From: "Alice" MEDIA 10.0.0.1:4000')


def test_options_is_traced(make_fields, clock):
    event = SipEvent.from_fields(make_fields(method='OPTIONS', to_user='bob', status_code=200, call_id='x'))
    assert format_call_event(clock(0), event).endswith('200 CID:x')


def test_missing_method(make_fields, clock):
    event = SipEvent.from_fields(make_fields(method=''))
    assert format_call_event(clock(0), event) is None


def test_tracker_routes_calls_to_trace(tracker, make_fields, clock, trace):
    tracker.analyze(clock(0), make_fields(method='INVITE', to_user='bob', call_id='abc'))
    tracker.analyze(clock(1), make_fields(method='BYE', to_user='bob', status_code=200, call_id='abc'))
    tracker.analyze(clock(2), make_fields(method=''))
    lines = trace()
    assert len(lines) == 2
    assert 'REQ CID:abc' in lines[0]
    assert '200 CID:abc' in lines[1]
    assert tracker.registrations == {}
    assert tracker.pending_requests == {}
    assert tracker.protocol_counters['INVITE'] == 1
    assert tracker.protocol_counters['UNKNOWN'] == 1
