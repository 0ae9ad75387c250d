#!/usr/bin/env python3
"""Record an I-V curve from a uSMU and write it as CSV or Parquet.

Examples:
    python record_iv_curve.py --port /dev/ttyACM0 --output curve.csv
    python record_iv_curve.py --serial-number 4027056414 --steps 101 \\
        --start-voltage -2 --end-voltage 2 --format parquet --output curve.parquet

Serial defaults come from USMU_PORT and USMU_BAUD, session timeouts from
USMU_REPLY_TIMEOUT, USMU_MEASURE_TIMEOUT and USMU_POST_WRITE_DELAY, and the
log level from LOG_LEVEL.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from iv_sweep import IvCurveRecorder
from usmu import Session, SessionConfig, UsmuError, find_serial_ports, protocol

logger = logging.getLogger("record_iv_curve")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record an I-V curve from a uSMU")
    parser.add_argument("--port", default=os.getenv("USMU_PORT"),
                        help="Serial port (default: $USMU_PORT, else autodetect)")
    parser.add_argument("--baud", type=int,
                        default=int(os.getenv("USMU_BAUD", str(protocol.BAUD_RATE))),
                        help="Baud rate (default: $USMU_BAUD or 9600)")
    parser.add_argument("--serial-number", type=int, default=None,
                        help="Unique ID of the device to use when autodetecting")
    parser.add_argument("--start-voltage", type=float, default=-1.0,
                        help="First setpoint in volts (default: -1)")
    parser.add_argument("--end-voltage", type=float, default=1.0,
                        help="Last setpoint in volts (default: 1)")
    parser.add_argument("--steps", type=int, default=50,
                        help="Number of setpoints (default: 50)")
    parser.add_argument("--current-limit", type=float, default=0.02,
                        help="Current limit in amps (default: 0.02)")
    parser.add_argument("--oversampling", type=int, default=16,
                        help="Samples averaged per point, power of two (default: 16)")
    parser.add_argument("--delay", type=float, default=0.0,
                        help="Settling delay per point in seconds (default: 0)")
    parser.add_argument("--output", default=None,
                        help="Output file (default: CSV on stdout)")
    parser.add_argument("--format", choices=["csv", "parquet"], default="csv",
                        help="Output format (default: csv)")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"),
                        help="Logging level (default: $LOG_LEVEL or WARNING)")
    return parser


def select_port(serial_number: Optional[int], baud: int, config: SessionConfig) -> str:
    """Find the port of the uSMU to use.

    Queries the unique ID of every connected uSMU and keeps those matching
    serial_number (all of them when it is None). Ports that can't be opened
    or don't answer with a uSMU identity are skipped.

    Raises:
        UsmuError: If no device, or more than one, remains
    """
    candidates: List[str] = []
    unreadable: List[str] = []
    for port in find_serial_ports():
        try:
            with Session.open(port, baud, config) as session:
                uid = session.device_id()
        except UsmuError as e:
            logger.warning(f"Skipping {port}, failed to read device ID: {e}")
            unreadable.append(port)
            continue
        logger.info(f"Found uSMU {uid} on {port}")
        if serial_number is None or uid == serial_number:
            candidates.append(port)

    if not candidates:
        wanted = f" with ID {serial_number}" if serial_number is not None else ""
        skipped = f" (failed to read {', '.join(unreadable)})" if unreadable else ""
        raise UsmuError(f"No uSMU{wanted} found{skipped}")
    if len(candidates) > 1:
        raise UsmuError(
            f"Multiple uSMUs found ({', '.join(candidates)}); "
            "select one with --port or --serial-number"
        )
    return candidates[0]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if args.format == "parquet" and args.output is None:
        print("Error: --format parquet requires --output", file=sys.stderr)
        return 2

    try:
        config = SessionConfig.from_env()
        port = args.port or select_port(args.serial_number, args.baud, config)

        with Session.open(port, args.baud, config) as session:
            recorder = IvCurveRecorder(session)
            df = recorder.record(
                start_v=args.start_voltage,
                end_v=args.end_voltage,
                steps=args.steps,
                limit_a=args.current_limit,
                oversampling=args.oversampling,
                delay_s=args.delay,
            )

            if args.output is None:
                df.to_csv(sys.stdout, index=False)
            else:
                path = recorder.export(args.format, args.output)
                print(f"Wrote {len(df)} points to {path}", file=sys.stderr)

    except (UsmuError, ValueError) as e:
        logger.error(f"I-V sweep failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ImportError as e:
        logger.error(f"Parquet export unavailable: {e}")
        print(f"Error: {e}. Install the parquet extra: pip install usmu[parquet]", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
