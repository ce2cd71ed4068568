import logging
import subprocess
from datetime import datetime, timezone

import pytest

from analyzers.common import EPOCH, SIP_EVENT_FIELDS
from capture.tshark import (BASE_TSHARK_ARGS, build_tshark_args, expand_capture_paths, parse_epoch_timestamp,
                            parse_trace_line, run_capture)


class RecordingAnalyzer:
    def __init__(self, interrupt_after=None):
        self.events = []
        self.interrupt_after = interrupt_after

    def analyze(self, ts, fields):
        self.events.append((ts, fields))
        if self.interrupt_after is not None and len(self.events) == self.interrupt_after:
            raise KeyboardInterrupt


class FakeProcess:
    """Stands in for the tshark child process"""
    def __init__(self, lines, exit_code=0):
        self.stdout = FakeStdout(lines, self)
        self.returncode = None
        self.exit_code = exit_code
        self.terminated = False
        self.closed = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def wait(self):
        if self.returncode is None:
            self.returncode = self.exit_code
        return self.returncode


class FakeStdout:
    def __init__(self, lines, process):
        self.lines = iter(lines)
        self.process = process

    def __iter__(self):
        return self

    def __next__(self):
        return next(self.lines)

    def close(self):
        self.process.closed = True


def fake_popen(monkeypatch, lines, exit_code=0):
    process = FakeProcess(lines, exit_code)
    calls = []

    def _popen(command, **kwargs):
        calls.append(command)
        return process
    monkeypatch.setattr(subprocess, 'Popen', _popen)
    return process, calls


def trace_line(epoch, *fields):
    return '\t'.join((epoch,) + fields) + '\n'


def test_build_tshark_args_offline():
    tshark_args = build_tshark_args(display_filter='sip', read_file='trace.pcap', decode_as='udp.port==5080,sip')
    assert tshark_args[:len(BASE_TSHARK_ARGS)] == BASE_TSHARK_ARGS
    assert tshark_args[len(BASE_TSHARK_ARGS):] == ['-Y', 'sip', '-r', 'trace.pcap', '-d', 'udp.port==5080,sip',
                                                   '-t', 'e.6']


def test_build_tshark_args_live():
    tshark_args = build_tshark_args(interface='eth0', capture_filter='udp port 5080')
    assert tshark_args[len(BASE_TSHARK_ARGS):] == ['-i', 'eth0', '-f', 'udp port 5080', '-t', 'e.6']


def test_parse_epoch_timestamp():
    ts = parse_epoch_timestamp('1738062028.284088')
    assert ts == datetime(2025, 1, 28, 11, 0, 28, 284088, tzinfo=timezone.utc)
    assert parse_epoch_timestamp('1738062028') == datetime(2025, 1, 28, 11, 0, 28, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ['', 'abc', 'abc.def', '1738062028.xyz'])
def test_parse_epoch_timestamp_invalid(value):
    assert parse_epoch_timestamp(value) == EPOCH


def test_parse_trace_line_pads_fields():
    ts, fields = parse_trace_line(trace_line('1738062028.000000', '10.0.0.1', '10.0.0.2', 'alice'))
    assert ts.year == 2025
    assert len(fields) == SIP_EVENT_FIELDS
    assert fields[:3] == ['10.0.0.1', '10.0.0.2', 'alice']
    assert fields[3:] == [''] * (SIP_EVENT_FIELDS - 3)


def test_expand_capture_paths(tmp_path, caplog):
    for name in ('b.pcap', 'a.pcap', 'notes.txt'):
        (tmp_path / name).write_text('')
    (tmp_path / 'dir.pcap').mkdir()
    assert expand_capture_paths(str(tmp_path / '*.pcap')) == [str(tmp_path / 'a.pcap'), str(tmp_path / 'b.pcap')]
    assert expand_capture_paths(None) == [None]

    with caplog.at_level(logging.WARNING):
        assert expand_capture_paths(str(tmp_path / '*.pcapng')) == []
    assert 'No capture files match' in caplog.text


def test_run_capture_feeds_every_line(monkeypatch):
    lines = [trace_line('1738062028.000000', '10.0.0.1', '10.0.0.2', 'alice'),
             trace_line('1738062029.000000', '10.0.0.2', '10.0.0.1', 'alice')]
    process, calls = fake_popen(monkeypatch, lines)
    analyzer = RecordingAnalyzer()

    assert run_capture(['-r', 'trace.pcap'], analyzer, tshark_binary='/opt/tshark') is True
    assert calls == [['/opt/tshark', '-r', 'trace.pcap']]
    assert len(analyzer.events) == 2
    assert analyzer.events[1][1][0] == '10.0.0.2'
    assert process.closed
    assert not process.terminated


def test_run_capture_without_tshark(monkeypatch, caplog):
    def _popen(command, **kwargs):
        raise FileNotFoundError(command[0])
    monkeypatch.setattr(subprocess, 'Popen', _popen)

    with caplog.at_level(logging.ERROR):
        assert run_capture([], RecordingAnalyzer()) is False
    assert 'tshark command not found' in caplog.text


def test_run_capture_interrupted_drains_output(monkeypatch):
    lines = [trace_line(f'17380620{i:02}.000000', '10.0.0.1') for i in range(4)]
    process, _ = fake_popen(monkeypatch, lines)
    analyzer = RecordingAnalyzer(interrupt_after=1)

    with pytest.raises(KeyboardInterrupt):
        run_capture([], analyzer)
    assert len(analyzer.events) == 4
    assert process.terminated
    assert process.closed


def test_run_capture_warns_on_tshark_failure(monkeypatch, caplog):
    process, _ = fake_popen(monkeypatch, [], exit_code=2)
    with caplog.at_level(logging.WARNING):
        assert run_capture(['-Y', 'sip.bogus'], RecordingAnalyzer()) is True
    assert 'tshark exited with code 2' in caplog.text
    assert not process.terminated


def test_run_capture_clean_exit_is_quiet(monkeypatch, caplog):
    fake_popen(monkeypatch, [trace_line('1738062028.000000', '10.0.0.1')])
    with caplog.at_level(logging.WARNING):
        run_capture([], RecordingAnalyzer())
    assert caplog.text == ''


def test_run_capture_analyzer_error_stops_tshark(monkeypatch):
    process, _ = fake_popen(monkeypatch, [trace_line('1738062028.000000', '10.0.0.1')])

    class BrokenAnalyzer:
        def analyze(self, ts, fields):
            raise RuntimeError("broken")

    with pytest.raises(RuntimeError):
        run_capture([], BrokenAnalyzer())
    assert process.terminated
    assert process.closed
