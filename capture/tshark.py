# -*- coding: utf-8 -*-
"""
Runs tshark in field mode and feeds each output line to a protocol analyzer.
"""
import glob
import os.path
import logging
import signal
import subprocess
from datetime import datetime, timedelta, timezone

from analyzers.common import EPOCH, SIP_EVENT_FIELDS

TSHARK_BINARY = 'tshark'

# Timestamp, source and destination always lead the protocol fields
BASE_TSHARK_ARGS = ['-Q', '-l', '-T', 'fields',
                    '-e', '_ws.col.Time',
                    '-e', '_ws.col.Source',
                    '-e', '_ws.col.Destination']


def build_tshark_args(display_filter=None, read_file=None, interface=None,
                      capture_filter=None, decode_as=None):
    """
    Builds the tshark argument list shared by every analyzer.

    Args:
        display_filter (str): Value for -Y.
        read_file (str): Capture file for -r. None for a live capture.
        interface (str): Interface for -i.
        capture_filter (str): Value for -f.
        decode_as (str): Value for -d (e.g. 'udp.port==5080,sip').

    Returns:
        list: tshark arguments, without the protocol fields.
    """
    tshark_args = list(BASE_TSHARK_ARGS)
    if display_filter:
        tshark_args.extend(['-Y', display_filter])
    if read_file:
        tshark_args.extend(['-r', read_file])
    if interface:
        tshark_args.extend(['-i', interface])
    if capture_filter:
        tshark_args.extend(['-f', capture_filter])
    if decode_as:
        tshark_args.extend(['-d', decode_as])
    # Epoch time with microseconds
    tshark_args.extend(['-t', 'e.6'])
    return tshark_args


def expand_capture_paths(pattern):
    """
    Resolves the -r argument to the capture files to read, in sorted order.
    A live capture is represented by a single None entry.
    """
    if not pattern:
        return [None]
    paths = sorted(path for path in glob.glob(pattern) if os.path.isfile(path))
    if not paths:
        logging.warning(f"No capture files match '{pattern}'")
    return paths


def parse_epoch_timestamp(value):
    """Parses 'seconds.micros' as printed by tshark -t e.6. Unparsable values map to the Unix epoch."""
    seconds, _, fraction = value.strip().partition('.')
    try:
        micros = int(fraction[:6].ljust(6, '0')) if fraction else 0
        return datetime.fromtimestamp(int(seconds), tz=timezone.utc) + timedelta(microseconds=micros)
    except (ValueError, OverflowError, OSError):
        return EPOCH


def parse_trace_line(line):
    ''' Splits one tshark field line into its timestamp and protocol fields '''
    columns = line.rstrip('\r\n').split('\t')
    fields = columns[1:]
    if len(fields) < SIP_EVENT_FIELDS:
        fields.extend([''] * (SIP_EVENT_FIELDS - len(fields)))
    return parse_epoch_timestamp(columns[0]), fields


def analyze_line(line, analyzer):
    ts, fields = parse_trace_line(line)
    analyzer.analyze(ts, fields)


def run_capture(tshark_args, analyzer, tshark_binary=TSHARK_BINARY):
    """
    Spawns tshark and feeds every line it prints to the analyzer.

    Args:
        tshark_args (list): Complete tshark arguments, protocol fields included.
        analyzer: ProtocolAnalyzer receiving the events.
        tshark_binary (str): tshark executable name or path.

    Returns:
        bool: False if tshark could not be started, True once its output is exhausted.
        A non-zero exit status of tshark is logged as a warning.
        KeyboardInterrupt is re-raised after the lines already printed by tshark are analyzed.
    """
    command = [tshark_binary] + tshark_args
    logging.debug(f"Executing command: '{' '.join(command)}'")
    try:
        process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL, text=True)
    except FileNotFoundError:
        logging.error("tshark command not found. Make sure Wireshark is installed and tshark is in your system's PATH.")
        return False

    try:
        for line in process.stdout:
            analyze_line(line, analyzer)
    except KeyboardInterrupt:
        logging.warning("Ctrl+C received, stopping capture")
        process.terminate()
        for line in process.stdout:
            analyze_line(line, analyzer)
        raise
    except Exception:
        process.terminate()
        raise
    finally:
        process.wait()
        process.stdout.close()

    if process.returncode not in (0, -signal.SIGTERM):
        logging.warning(f"tshark exited with code {process.returncode}, check the capture file and filters")
    return True
