#!/usr/bin/env python3
"""
zlink command line client
Runs the companion client against a full-node daemon, reports status,
sends transactions and pairs a mobile device.
"""

import argparse
import asyncio
import json
import signal
import sys
import logging
from typing import Optional

from zlink_node.config.config_manager import ConfigManager
from zlink_node.core.context import ClientContext
from zlink_node.core.exceptions import ZlinkError
from zlink_node.core.types import ConnectionType
from zlink_node.rpc.client import DaemonRPCClient
from zlink_node.rpc.methods import DaemonAPI
from zlink_node.tasks.sync_poller import SyncPoller
from zlink_node.utils.helpers import configure_logging
from zlink_relay.types import TransportKind
from zlink_wallet.core.types import FeePolicy, Recipient, TransactionJob, TransactionRequest
from zlink_wallet.utils.payment_uri import parse_payment_uri

logger = logging.getLogger("zlink_cli")

DEFAULT_CONFIG = "~/.zlink/config.yaml"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='zlink companion client')
    parser.add_argument('--config', default=DEFAULT_CONFIG,
                        help=f'Configuration file, YAML/JSON/TOML (default: {DEFAULT_CONFIG})')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Log level (default: from configuration)')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    run_parser = subparsers.add_parser('run', help='Supervise the daemon and keep polling until interrupted')
    run_parser.add_argument('--pair', choices=[kind.value for kind in TransportKind],
                            help='Also start pairing a device over this transport')
    run_parser.add_argument('--keep-daemon', action='store_true',
                            help='Leave an embedded daemon running on exit')

    subparsers.add_parser('status', help='Show daemon, chain and balance status')

    send_parser = subparsers.add_parser('send', help='Send a transaction and wait for it')
    send_parser.add_argument('from_address', help='Address to send from')
    send_parser.add_argument('to', help='Destination address or payment URI')
    send_parser.add_argument('amount', nargs='?', help='Amount to send (taken from the URI if omitted)')
    send_parser.add_argument('--memo', help='Memo for a shielded recipient')
    send_parser.add_argument('--fee', help='Custom fee (must be enabled in the configuration)')
    send_parser.add_argument('--timeout', type=float, default=600.0,
                             help='Seconds to wait for completion (default: 600)')

    pair_parser = subparsers.add_parser('pair', help='Pair a companion device')
    pair_parser.add_argument('transport', nargs='?', default=TransportKind.DIRECT.value,
                             choices=[kind.value for kind in TransportKind],
                             help='direct (same network) or relayed (internet relay)')

    return parser


def build_request(args, scheme: str) -> TransactionRequest:
    to, amount, memo = args.to, args.amount, args.memo
    if to.lower().startswith(f"{scheme}:"):
        uri = parse_payment_uri(to, scheme)
        to = uri.address
        amount = amount or (str(uri.amount) if uri.amount is not None else None)
        memo = memo or uri.memo
    if amount is None:
        raise ZlinkError("No amount given")

    fee = FeePolicy.custom(args.fee) if args.fee else FeePolicy.default()
    return TransactionRequest(args.from_address, [Recipient(to, amount, memo)], fee)


async def wait_for_shutdown():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass
    await stop.wait()


async def cmd_run(context: ClientContext, args) -> int:
    await context.start()
    try:
        if args.pair:
            descriptor = await context.initiate_pairing(TransportKind(args.pair))
            print(f"Connection string: {descriptor}")
        await wait_for_shutdown()
    finally:
        await context.shutdown(stop_daemon=not args.keep_daemon)
    return 0


async def cmd_status(context: ClientContext, args) -> int:
    # Only look at a daemon that is already running
    context.config.daemon.allow_embedded = False
    endpoint = await context.supervisor.start()
    async with DaemonRPCClient(endpoint, timeout=context.config.rpc.timeout) as client:
        poller = SyncPoller(DaemonAPI(client), context.config.poller,
                            context.config.transactions.minconf,
                            snapshot=context.snapshots, status=context.poller_status)
        await poller.poll_once()
    print(json.dumps(context.status(), indent=2, default=str))
    return 0


def print_job(job: TransactionJob):
    line = f"[{job.status.value:>12}] {job.progress:3d}%"
    if job.txid:
        line += f" txid={job.txid}"
    if job.error:
        line += f" error={job.error}"
    print(line)


async def cmd_send(context: ClientContext, args) -> int:
    request = build_request(args, context.config.transactions.uri_scheme)
    await context.start()
    embedded = context.supervisor.state.value.mode is ConnectionType.EMBEDDED
    try:
        handle = context.submit(request)
        for warning in handle.job.warnings:
            print(f"Warning: {warning}")

        last_shown = {}

        def show(jobs):
            job = context.orchestrator.get_job(handle.job_id)
            if job is not None and (job.status, job.progress) != last_shown.get('state'):
                last_shown['state'] = (job.status, job.progress)
                print_job(job)

        unsubscribe = context.orchestrator.jobs.subscribe(show, replay=True)
        try:
            job = await handle.wait(args.timeout)
        finally:
            unsubscribe()
    finally:
        await context.shutdown(stop_daemon=embedded)
    return 0 if job.txid else 1


async def cmd_pair(context: ClientContext, args) -> int:
    await context.start()
    try:
        descriptor = await context.initiate_pairing(TransportKind(args.transport))
        print(f"Connection string: {descriptor}")
        session = await context.relay.wait_until_paired()
        print(f"Paired with {session.peer_name or 'device'}")
        await wait_for_shutdown()
    finally:
        await context.shutdown(stop_daemon=False)
    return 0


COMMANDS = {
    'run': cmd_run,
    'status': cmd_status,
    'send': cmd_send,
    'pair': cmd_pair,
}


def main(argv: Optional[list] = None) -> int:
    """CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    try:
        config_manager = ConfigManager(args.config)
    except ZlinkError as e:
        print(f"Error: {e}")
        return 1

    log_config = config_manager.config.logging
    configure_logging(level=args.log_level or log_config.level,
                      log_file=log_config.file or None,
                      component='',
                      max_bytes=log_config.max_size,
                      backup_count=log_config.backup_count)

    context = ClientContext(config_manager)
    try:
        return asyncio.run(COMMANDS[args.command](context, args))
    except KeyboardInterrupt:
        print("\nOperation cancelled")
        return 1
    except asyncio.TimeoutError:
        print("Error: timed out")
        return 1
    except ZlinkError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
