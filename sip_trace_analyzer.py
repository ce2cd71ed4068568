# -*- coding: utf-8 -*-
"""
Live or offline SIP trace analyzer.

Runs tshark against an interface or a set of capture files, prints a trace of
REGISTER and call signalling, and ends with a per-user registration report.
"""
import argparse
import logging
import sys

import yaml

from analyzers.sip_registration import (RegistrationTracker, REPEAT_REPORT_SECONDS, REQUEST_TIMEOUT_SECONDS,
                                        STALE_REQUEST_SECONDS)
from capture.tshark import TSHARK_BINARY, build_tshark_args, expand_capture_paths, run_capture

########################################################################
#
# Parameters
#
########################################################################
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

DEFAULT_SETTINGS = {
    'tshark': TSHARK_BINARY,
    'verbosity': 0,
    'stale_request_seconds': STALE_REQUEST_SECONDS,
    'request_timeout_seconds': REQUEST_TIMEOUT_SECONDS,
    'repeat_report_seconds': REPEAT_REPORT_SECONDS,
}

ANALYZERS = {
    'sip': RegistrationTracker,
}


def setup_logging(verbosity=0):
    """Diagnostics go to stderr, the trace itself is printed to stdout."""
    level = logging.DEBUG if verbosity > 2 else logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def load_settings(file_path=None):
    """
    Reads the optional YAML settings file on top of DEFAULT_SETTINGS.

    Args:
        file_path (str): Path to a YAML mapping, or None for the defaults.

    Returns:
        dict: The merged settings.

    Raises:
        OSError: If the file cannot be read.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the file does not hold a mapping.
    """
    settings = dict(DEFAULT_SETTINGS)
    if not file_path:
        return settings
    with open(file_path, encoding='utf-8') as settings_file:
        loaded = yaml.safe_load(settings_file) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Settings file '{file_path}' must contain a mapping")
    for key, value in loaded.items():
        if key not in DEFAULT_SETTINGS:
            logging.warning(f"Ignoring unknown setting '{key}' in {file_path}")
            continue
        settings[key] = value
    return settings


def create_analyzer(protocol, settings, **kwargs):
    ''' Returns the analyzer for the protocol, or None if there is none '''
    analyzer_class = ANALYZERS.get(protocol)
    if analyzer_class is None:
        return None
    return analyzer_class(verbosity=settings['verbosity'],
                          stale_request_seconds=settings['stale_request_seconds'],
                          request_timeout_seconds=settings['request_timeout_seconds'],
                          repeat_report_seconds=settings['repeat_report_seconds'],
                          **kwargs)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Trace SIP registrations and calls from tshark output.")
    parser.add_argument('-i', dest='interface', help="Capture interface")
    parser.add_argument('-f', dest='capture_filter', help="Capture filter")
    parser.add_argument('-Y', dest='display_filter', help="Display filter")
    parser.add_argument('-r', dest='read_file', help="Read packets from pcap files (glob pattern)")
    parser.add_argument('-d', dest='decode_as', help="Decode packets as (e.g udp.port==5060,sip)")
    parser.add_argument('-p', dest='protocol', default='sip', help="Protocol analyzer (default: sip)")
    parser.add_argument('-v', dest='verbosity', action='count', default=0, help="Verbosity level (e.g. -vvv)")
    parser.add_argument('--config', help="YAML settings file")
    parser.add_argument('--export', help="Write the registration table to this CSV file")
    return parser.parse_args(argv)


def export_registrations(analyzer, file_path):
    registrations_df = analyzer.get_all_data()['registrations']
    try:
        registrations_df.to_csv(file_path, index=False)
    except OSError as e:
        logging.error(f"Could not write registrations to '{file_path}': {e}")
        return False
    logging.info(f"Wrote {len(registrations_df)} registrations to {file_path}")
    return True


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbosity)
    try:
        settings = load_settings(args.config)
    except (OSError, yaml.YAMLError, ValueError) as e:
        logging.error(f"Could not load settings: {e}")
        return 2
    settings['verbosity'] = max(settings['verbosity'], args.verbosity)

    analyzer = create_analyzer(args.protocol, settings)
    if analyzer is None:
        print(f"No analyzer for protocol {args.protocol!r}", file=sys.stderr)
        return 1

    exit_code = 0
    try:
        for path in expand_capture_paths(args.read_file):
            tshark_args = build_tshark_args(display_filter=args.display_filter, read_file=path,
                                            interface=args.interface, capture_filter=args.capture_filter,
                                            decode_as=args.decode_as)
            analyzer.add_protocol_fields(tshark_args)
            if not run_capture(tshark_args, analyzer, tshark_binary=settings['tshark']):
                exit_code = 1
                break
    except KeyboardInterrupt:
        print("Main Loop shutting down...")

    analyzer.finalize()
    if args.export and not export_registrations(analyzer, args.export):
        exit_code = 1
    return exit_code


if __name__ == '__main__':
    sys.exit(main())
