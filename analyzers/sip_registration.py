# sip_registration.py

import logging
import sys
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional

import pandas as pd
from transitions import Machine

from analyzers.common import ProtocolAnalyzer, SipEvent, elapsed_minutes, elapsed_seconds, format_timestamp
from analyzers.sip_calls import format_call_event

########################################################################
#
# Parameters
#
########################################################################
STALE_REQUEST_SECONDS = 180     # Pending REGISTER requests are dropped after this age
REQUEST_TIMEOUT_SECONDS = 20    # A retransmitted REGISTER older than this is reported as a timeout
REPEAT_REPORT_SECONDS = 3600    # An unchanged condition is reported again after this time
TIMEOUT_STATUS_CODE = 408

SIP_PROTOCOL_FIELDS = ('sip.from.user',
                       'sip.from.host',
                       'sip.to.user',
                       'sip.to.host',
                       'sip.CSeq.method',
                       'sip.CSeq.seq',
                       'sip.Status-Code',
                       'sip.Expires',
                       'sdp.connection_info.address',
                       'sdp.media.port',
                       'sip.Call-ID',
                       'sip.from.display.info',
                       'udp.stream',
                       'sip.auth.username')
DEFAULT_DISPLAY_FILTER = 'sip'
DEFAULT_CAPTURE_FILTER = 'udp port 5060'

REGISTRATION_COLUMNS = ['user', 'registered', 'from_address', 'expires', 'last_error_code', 'errors',
                        'error_minutes', 'error_window_open', 'streams', 'last_seen']


class ResponseClass(Enum):
    """Outcome categories of a REGISTER message, keyed on its status code."""
    REQUEST = "request"
    SUCCESS = "2xx"
    REDIRECT = "3xx"
    CLIENT_ERROR = "4xx"
    AUTH_CHALLENGE = "401"
    PROXY_AUTH_CHALLENGE = "407"
    UNKNOWN = "unknown"


def classify_status_code(code: int) -> ResponseClass:
    if code == 0:
        return ResponseClass.REQUEST
    if 200 <= code < 300:
        return ResponseClass.SUCCESS
    if 300 <= code < 400:
        return ResponseClass.REDIRECT
    if code == 401:
        return ResponseClass.AUTH_CHALLENGE
    if code == 407:
        return ResponseClass.PROXY_AUTH_CHALLENGE
    if 400 <= code < 500:
        return ResponseClass.CLIENT_ERROR
    return ResponseClass.UNKNOWN


class PendingRequest(NamedTuple):
    """A REGISTER request still waiting for its final response"""
    ts: datetime
    expires: int
    auth_user: Optional[str]


class PendingChallenge(NamedTuple):
    """A 401 sent to a user that has no registration status yet"""
    ts: datetime
    stream: int


class RegistrationStatus:
    ''' Registration health of one user.
        Instances are models of the tracker's error window machine,
        which adds the `state` attribute and the `error_detected`/`recovered` triggers.
    '''
    def __init__(self, from_addr: str, ts: datetime, expires: int = 0, last_error_code: int = 0):
        self.from_addr = from_addr
        self.last_reported_ts = ts
        self.last_seen_ts = ts
        self.expires = expires
        self.last_error_code = last_error_code
        self.repeat_count = 0
        self.udp_streams: dict[int, datetime] = {}
        self.last_stream = 0
        self.errors = 0
        self.last_error_ts: Optional[datetime] = None
        self.error_minutes = 0
        self.last_outage_minutes = 0
        # Set once a consecutive 401 on the same stream has been reported
        self.auth_rejected = False

    def open_error_window(self, timestamp: datetime):
        self.last_error_ts = timestamp

    def close_error_window(self, timestamp: datetime):
        self.last_outage_minutes = elapsed_minutes(timestamp, self.last_error_ts)
        self.error_minutes += self.last_outage_minutes
        self.last_error_ts = None


class RegistrationTracker(ProtocolAnalyzer):
    """
    Follows SIP REGISTER transactions per user and reports silent failures:
    expiry without renewal, repeated errors, authentication failures and request timeouts.
    Other SIP methods are printed as a call trace.
    """
    protocol_name = 'sip'

    error_window_states = ['healthy', 'failing']
    error_window_transitions = [
        {'trigger': 'error_detected', 'source': 'healthy', 'dest': 'failing', 'after': 'open_error_window'},
        {'trigger': 'recovered', 'source': 'failing', 'dest': 'healthy', 'before': 'close_error_window'},
    ]

    def __init__(self, verbosity=0, output=None, diagnostic=None,
                 stale_request_seconds=STALE_REQUEST_SECONDS,
                 request_timeout_seconds=REQUEST_TIMEOUT_SECONDS,
                 repeat_report_seconds=REPEAT_REPORT_SECONDS):
        self.verbosity = verbosity
        self.output = output if output is not None else sys.stdout
        self.diagnostic = diagnostic if diagnostic is not None else sys.stderr
        self.stale_request_seconds = stale_request_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.repeat_report_seconds = repeat_report_seconds
        self.pending_requests: dict[tuple[str, int], PendingRequest] = {}
        self.pending_challenges: dict[str, PendingChallenge] = {}
        self.registrations: dict[str, RegistrationStatus] = {}
        self.protocol_counters = defaultdict(int)
        self.finalized = False
        # One machine drives the error window of every tracked user
        self.error_window = Machine(model=None, states=self.error_window_states,
                                    transitions=self.error_window_transitions,
                                    initial='healthy', auto_transitions=False)

    def _emit(self, line: str):
        print(line, file=self.output)

    def _emit_diagnostic(self, line: str, min_verbosity: int):
        if self.verbosity >= min_verbosity:
            print(line, file=self.diagnostic)

    def add_protocol_fields(self, tshark_args: list) -> list:
        """Declares the SIP fields the tracker expects after the timestamp, source and destination columns."""
        for field in SIP_PROTOCOL_FIELDS:
            tshark_args.extend(['-e', field])
        if '-Y' not in tshark_args:
            tshark_args.extend(['-Y', DEFAULT_DISPLAY_FILTER])
        if '-i' in tshark_args and '-f' not in tshark_args:
            tshark_args.extend(['-f', DEFAULT_CAPTURE_FILTER])
        return tshark_args

    def cleanup_stale_requests(self, ts: datetime):
        stale_keys = [key for key, request in self.pending_requests.items()
                      if elapsed_seconds(ts, request.ts) >= self.stale_request_seconds]
        for key in stale_keys:
            del self.pending_requests[key]
        if stale_keys:
            logging.debug(f"Dropped {len(stale_keys)} stale REGISTER requests")
        stale_users = [user for user, challenge in self.pending_challenges.items()
                       if elapsed_seconds(ts, challenge.ts) >= self.stale_request_seconds]
        for user in stale_users:
            del self.pending_challenges[user]

    def sweep_expired_registrations(self, ts: datetime):
        """Reports registrations not renewed within their expiry and prunes idle UDP streams."""
        for user, status in self.registrations.items():
            if status.expires == 0:
                continue
            if elapsed_seconds(ts, status.last_seen_ts) > status.expires:
                self._emit(f'{format_timestamp(ts)} REGISTER {user:<10} EXPIRED!!!  {status.expires} seconds '
                           f'({format_timestamp(status.last_seen_ts)})')
                status.expires = 0
                status.repeat_count = 0
                status.last_error_code = 0
                status.udp_streams.clear()
                self._record_error(status, ts)
            else:
                status.udp_streams = {stream: seen for stream, seen in status.udp_streams.items()
                                      if elapsed_seconds(ts, seen) < status.expires}

    def analyze(self, ts: datetime, fields) -> None:
        event = SipEvent.from_fields(fields)
        self.protocol_counters[event.method or 'UNKNOWN'] += 1
        if event.status_code:
            self.protocol_counters[f"SIP_Response_{event.status_code}"] += 1

        self.sweep_expired_registrations(ts)
        if event.method == 'REGISTER':
            self._process_register(ts, event)
        elif line := format_call_event(ts, event):
            self._emit(line)

    def _process_register(self, ts: datetime, event: SipEvent):
        key = (event.from_user, event.seq)
        prefix = event.trace_prefix(ts)
        response_class = classify_status_code(event.status_code)
        match response_class:
            case ResponseClass.REQUEST:
                self._process_request(ts, event, key, prefix)
                return
            case ResponseClass.SUCCESS:
                self._process_success(ts, event, key, prefix)
            case ResponseClass.REDIRECT:
                self._process_redirect(ts, event, prefix)
            case ResponseClass.CLIENT_ERROR:
                self._process_client_error(ts, event, prefix)
            case ResponseClass.AUTH_CHALLENGE:
                self._process_auth_challenge(ts, event, key, prefix)
            case ResponseClass.PROXY_AUTH_CHALLENGE:
                self._touch(ts, event.from_user)
            case _:
                self._touch(ts, event.from_user)
                self._emit(f'{prefix}{event.status_code:03}/Unknown')
        # Any response resolves the request
        self.pending_requests.pop(key, None)
        if response_class not in (ResponseClass.AUTH_CHALLENGE, ResponseClass.PROXY_AUTH_CHALLENGE):
            self.pending_challenges.pop(event.from_user, None)

    def _create_status(self, user: str, from_addr: str, ts: datetime, **kwargs) -> RegistrationStatus:
        status = RegistrationStatus(from_addr, ts, **kwargs)
        self.error_window.add_model(status)
        self.registrations[user] = status
        logging.debug(f"Tracking registration status for user {user}")
        return status

    def _touch(self, ts: datetime, user: str):
        if status := self.registrations.get(user):
            status.last_seen_ts = ts

    def _is_material_change(self, status: RegistrationStatus, ts: datetime, code: int, expires: int,
                            from_changed=False, new_stream=False, closing_window=False) -> bool:
        """Tells a condition worth reporting apart from a repeat of the last reported one."""
        return (status.last_error_code != code
                or status.expires != expires
                or from_changed
                or new_stream
                or closing_window
                or elapsed_seconds(ts, status.last_reported_ts) >= self.repeat_report_seconds)

    @staticmethod
    def _mark_reported(status: RegistrationStatus, ts: datetime):
        status.last_reported_ts = ts
        status.repeat_count = 0

    @staticmethod
    def _record_error(status: RegistrationStatus, ts: datetime):
        status.errors += 1
        if status.is_healthy():
            status.error_detected(timestamp=ts)

    def _process_request(self, ts: datetime, event: SipEvent, key: tuple, prefix: str):
        self.cleanup_stale_requests(ts)
        auth_user = event.auth_user or None
        request = self.pending_requests.get(key)
        if request is None:
            self.pending_requests[key] = PendingRequest(ts=ts, expires=event.expires, auth_user=auth_user)
            return
        self.pending_requests[key] = request._replace(auth_user=auth_user)

        age = elapsed_seconds(ts, request.ts)
        if age <= self.request_timeout_seconds:
            return
        status = self.registrations.get(event.from_user)
        if status is None:
            self._emit(f'{prefix}{TIMEOUT_STATUS_CODE}/Timeout {age} s {event.from_addr:<15}')
            status = self._create_status(event.from_user, event.from_addr, ts,
                                         last_error_code=TIMEOUT_STATUS_CODE)
            self._record_error(status, ts)
            return

        status.last_seen_ts = ts
        if not self._is_material_change(status, ts, TIMEOUT_STATUS_CODE, 0):
            status.repeat_count += 1
            return
        status.last_error_code = TIMEOUT_STATUS_CODE
        status.expires = 0
        status.udp_streams.pop(event.udp_stream, None)
        self._mark_reported(status, ts)
        self._record_error(status, ts)
        self._emit(f'{prefix}{TIMEOUT_STATUS_CODE}/Timeout {age} s ({status.repeat_count})')

    def _process_success(self, ts: datetime, event: SipEvent, key: tuple, prefix: str):
        code = event.status_code
        expires = event.expires
        if expires == 0 and (request := self.pending_requests.get(key)):
            expires = request.expires
        if expires == 0:
            self._emit(f'{prefix}{code:03}/OK      UNREGISTERED')

        status = self.registrations.get(event.from_user)
        if status is None:
            if expires != 0:
                self._emit(f'{prefix}{code:03}/OK      Expires:{expires:4} ( F,{event.udp_stream:4}) '
                           f'{event.to_addr:<15}')
            status = self._create_status(event.from_user, event.to_addr, ts, expires=expires,
                                         last_error_code=code)
            status.udp_streams[event.udp_stream] = ts
            status.last_stream = event.udp_stream
            return

        # A challenge answered with success is not a condition change
        if status.last_error_code == 401:
            status.last_error_code = code
        status.last_seen_ts = ts
        from_changed = expires != 0 and event.to_addr != status.from_addr
        if from_changed:
            status.from_addr = event.to_addr
        status.last_stream = event.udp_stream
        new_stream = event.udp_stream not in status.udp_streams
        status.udp_streams[event.udp_stream] = ts

        if not self._is_material_change(status, ts, code, expires, from_changed=from_changed,
                                        new_stream=new_stream, closing_window=status.is_failing()):
            status.repeat_count += 1
            return
        status.expires = expires
        status.last_error_code = code
        self._mark_reported(status, ts)
        if expires == 0:
            return
        line = (f'{prefix}{code:03}/OK      Expires:{expires:4} ({status.repeat_count:2},{event.udp_stream:4}) '
                f'{status.from_addr:<15}')
        if status.is_failing():
            status.recovered(timestamp=ts)
            line += f' Last Error: {status.last_outage_minutes} minutes.'
        self._emit(line)

    def _process_redirect(self, ts: datetime, event: SipEvent, prefix: str):
        code = event.status_code
        status = self.registrations.get(event.from_user)
        if status is None:
            self._emit(f'{prefix}{code:03}/Redirect')
            status = self._create_status(event.from_user, event.to_addr, ts, last_error_code=code)
            status.udp_streams[event.udp_stream] = ts
            return

        status.last_seen_ts = ts
        if not self._is_material_change(status, ts, code, status.expires):
            status.repeat_count += 1
            return
        status.last_error_code = code
        self._mark_reported(status, ts)
        self._emit(f'{prefix}{code:03}/Redirect ({status.repeat_count})')

    def _process_client_error(self, ts: datetime, event: SipEvent, prefix: str):
        code = event.status_code
        status = self.registrations.get(event.from_user)
        if status is None:
            self._emit(f'{prefix}{code:03}/Error')
            status = self._create_status(event.from_user, event.to_addr, ts, last_error_code=code)
            self._record_error(status, ts)
            return

        status.last_seen_ts = ts
        if not self._is_material_change(status, ts, code, status.expires):
            status.repeat_count += 1
            return
        status.last_error_code = code
        self._mark_reported(status, ts)
        self._record_error(status, ts)
        self._emit(f'{prefix}{code:03}/Error ({status.repeat_count})')

    def _process_auth_challenge(self, ts: datetime, event: SipEvent, key: tuple, prefix: str):
        """
        A single 401 is the normal digest handshake and stays silent.
        A second 401 on the same UDP stream means the credentials were rejected,
        further 401s on that stream are repeats of the same rejection.
        A user without registration status only leaves a pending challenge behind.
        """
        request = self.pending_requests.get(key)
        auth_user = request.auth_user if request and request.auth_user else event.from_user
        status = self.registrations.get(event.from_user)
        if status is None:
            challenge = self.pending_challenges.pop(event.from_user, None)
            if challenge is None or challenge.stream != event.udp_stream:
                self.pending_challenges[event.from_user] = PendingChallenge(ts=ts, stream=event.udp_stream)
                return
            status = self._create_status(event.from_user, event.to_addr, ts, last_error_code=401)
            status.last_stream = event.udp_stream
            status.auth_rejected = True
            self._record_error(status, ts)
            self._emit(f'{prefix}401/Unauthorized {auth_user}')
            return

        status.last_seen_ts = ts
        if status.last_error_code != 401 or status.last_stream != event.udp_stream:
            status.auth_rejected = False
        elif not status.auth_rejected or self._is_material_change(status, ts, 401, status.expires):
            status.auth_rejected = True
            self._mark_reported(status, ts)
            self._record_error(status, ts)
            self._emit(f'{prefix}401/Unauthorized {auth_user}')
        else:
            status.repeat_count += 1
        status.last_stream = event.udp_stream
        status.last_error_code = 401

    def _summary_line(self, user: str, status: RegistrationStatus) -> str:
        registered = 'REGISTERED' if status.expires > 0 else 'UNREGISTERED'
        line = (f'{user:12} {registered:12} from {status.from_addr:<15}\t{status.errors:3} errors for '
                f'{status.error_minutes:4} minutes')
        if len(status.udp_streams) > 1:
            line += f'\t{len(status.udp_streams)} streams: '
            line += ''.join(f'{format_timestamp(seen)}, ' for seen in sorted(status.udp_streams.values()))
        else:
            line += f'\tlast seen: {format_timestamp(status.last_seen_ts)}'
        return line

    def get_statistics(self) -> dict:
        registered = sum(1 for status in self.registrations.values() if status.expires > 0)
        return {"total users registered": registered,
                "total users un-registered": len(self.registrations) - registered,
                "total errors": sum(status.errors for status in self.registrations.values()),
                "total errors time": sum(status.error_minutes for status in self.registrations.values()),
                "registered requests pending": len(self.pending_requests)}

    def finalize(self) -> None:
        """Emits the per-user registration summary and the aggregate counters. Runs once."""
        if self.finalized:
            logging.warning("Registration summary already emitted, ignoring finalize()")
            return
        self.finalized = True

        header = '\n ------------ Register Status ------------ \n'
        self._emit(header)
        self._emit_diagnostic(header, 2)
        for user in sorted(self.registrations):
            line = self._summary_line(user, self.registrations[user])
            self._emit(line)
            self._emit_diagnostic(line, 2)

        stats = self.get_statistics()
        report = '\n'.join([
            '',
            '--------- STATS -----------',
            f'- total users registered: {stats["total users registered"]}',
            f'- total users un-registered: {stats["total users un-registered"]}',
            f'- total errors: {stats["total errors"]}',
            f'- total errors time: {stats["total errors time"]} minutes',
            f'- registered requests pending: {stats["registered requests pending"]}',
        ])
        self._emit(report)
        self._emit_diagnostic(report, 1)

    def get_all_data(self) -> dict[str, pd.DataFrame]:
        """Returns the registration table, the aggregate counters and the message counters as DataFrames."""
        rows = []
        for user in sorted(self.registrations):
            status = self.registrations[user]
            rows.append({'user': user,
                         'registered': status.expires > 0,
                         'from_address': status.from_addr,
                         'expires': status.expires,
                         'last_error_code': status.last_error_code,
                         'errors': status.errors,
                         'error_minutes': status.error_minutes,
                         'error_window_open': status.is_failing(),
                         'streams': len(status.udp_streams),
                         'last_seen': status.last_seen_ts})
        df_registrations = pd.DataFrame(rows, columns=REGISTRATION_COLUMNS) if rows else pd.DataFrame(
            columns=REGISTRATION_COLUMNS)
        df_statistics = pd.DataFrame([self.get_statistics()])
        df_counters = pd.DataFrame([dict(self.protocol_counters)]) if self.protocol_counters else pd.DataFrame()
        return {"registrations": df_registrations, "statistics": df_statistics, "counters": df_counters}
