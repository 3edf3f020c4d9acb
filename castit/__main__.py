#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging
from signal import SIGINT, SIGTERM

from castit.internal_types import *

from castit import (
    __version__ as pkg_version,
    MdnsDiscovery,
    SsdpDiscovery,
    LocalMediaResponder,
    CastController,
    DlnaController,
    CastItError,
  )
from castit.constants import (
    DEFAULT_MAX_QUERY_ROUNDS,
    DEFAULT_MAX_SEARCH_ATTEMPTS,
    DEFAULT_SEARCH_INTERVAL,
    DEFAULT_RECEIVER_APP,
  )

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def print_status(message: str) -> None:
    print(f"castit: {message}", file=sys.stderr)

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _args: argparse.Namespace

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    async def _wait_for_signal(self, timeout: Optional[float]=None) -> None:
        """Waits for SIGINT/SIGTERM, or for timeout seconds if timeout is not None."""
        loop = asyncio.get_running_loop()
        interrupted = asyncio.Event()
        for signal in (SIGINT, SIGTERM):
            loop.add_signal_handler(signal, interrupted.set)
        try:
            if timeout is None:
                await interrupted.wait()
            else:
                try:
                    await asyncio.wait_for(interrupted.wait(), timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            for signal in (SIGINT, SIGTERM):
                loop.remove_signal_handler(signal)

    async def cmd_mdns(self) -> int:
        duration: float = self._args.duration
        interfaces: Optional[List[str]] = self._args.interfaces
        if not interfaces is None and len(interfaces) == 0:
            interfaces = None
        loop = asyncio.get_running_loop()
        errors: List[str] = []
        discovery = MdnsDiscovery(
            max_query_rounds=self._args.max_rounds,
            callback_loop=loop,
            interfaces=interfaces,
          )
        discovery.devices_updated.add(lambda names: logging.info(f"mDNS devices: {names}"))
        discovery.errors.add(errors.append)
        discovery.errors.add(print_status)
        discovery.start()
        try:
            await self._wait_for_signal(duration)
        finally:
            await loop.run_in_executor(None, discovery.stop)
        results: List[JsonableDict] = [ device.to_jsonable() for device in discovery.get_devices() ]
        print(json.dumps(results, indent=2, sort_keys=True))
        return 1 if len(errors) > 0 and len(results) == 0 else 0

    async def cmd_ssdp(self) -> int:
        duration: float = self._args.duration
        discovery = SsdpDiscovery(
            search_interval=self._args.search_interval,
            max_search_attempts=self._args.max_attempts,
          )
        discovery.errors.add(print_status)
        async with discovery as d:
            if not d.is_running:
                return 1
            await self._wait_for_signal(duration)
        results: List[JsonableDict] = [ device.to_jsonable() for device in discovery.get_renderers() ]
        print(json.dumps(results, indent=2, sort_keys=True))
        return 0

    async def cmd_serve(self) -> int:
        responder = LocalMediaResponder(
            self._args.file,
            bind_address=self._args.bind_address,
            port=self._args.port,
            advertise_host=self._args.advertise_host,
          )
        try:
            url = responder.start()
        except CastItError as e:
            raise CmdExitError(1, str(e)) from e
        try:
            print(url)
            sys.stdout.flush()
            await self._wait_for_signal()
        finally:
            responder.stop()
        return 0

    async def cmd_cast(self) -> int:
        controller = CastController(receiver_app=self._args.app, advertise_host=self._args.advertise_host)
        controller.status.add(print_status)
        controller.errors.add(print_status)
        try:
            ok = await controller.cast_file(self._args.device, self._args.file)
            if ok:
                await self._wait_for_signal(self._args.hold)
        finally:
            await controller.close()
        return 0 if ok else 1

    async def cmd_dlna(self) -> int:
        controller = DlnaController(advertise_host=self._args.advertise_host)
        controller.status.add(print_status)
        controller.errors.add(print_status)
        try:
            ok = await controller.cast_media(self._args.control_url, self._args.file)
            if ok:
                await self._wait_for_signal(self._args.hold)
        finally:
            await controller.close()
        return 0 if ok else 1

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Parses the arguments given to the constructor (sys.argv[1:] if None) and runs the
           selected command. Returns the process exit code."""
        parser = NoExitArgumentParser(description="Discover media-casting receivers and play local media on them.")


        # ======================= Main command

        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= mdns

        parser_mdns = subparsers.add_parser('mdns', description="Discover Cast devices with multicast DNS")
        parser_mdns.add_argument('--duration', type=float, default=10.0,
                            help='''The number of seconds to listen before printing results. Default: 10''')
        parser_mdns.add_argument('--max-rounds', dest='max_rounds', type=int, default=DEFAULT_MAX_QUERY_ROUNDS,
                            help=f'''The number of periodic query rounds to send. Default: {DEFAULT_MAX_QUERY_ROUNDS}''')
        parser_mdns.add_argument('-i', '--interface', dest="interfaces", action='append', default=[],
                            help='''A local IPv4 address on which to join the multicast group. May be repeated. Default: all usable interfaces.''')
        parser_mdns.set_defaults(func=self.cmd_mdns)

        # ======================= ssdp

        parser_ssdp = subparsers.add_parser('ssdp', description="Discover DLNA media renderers with SSDP")
        parser_ssdp.add_argument('--duration', type=float, default=10.0,
                            help='''The number of seconds to listen before printing results. Default: 10''')
        parser_ssdp.add_argument('--search-interval', dest='search_interval', type=float, default=DEFAULT_SEARCH_INTERVAL,
                            help=f'''Seconds between M-SEARCH requests. Default: {DEFAULT_SEARCH_INTERVAL}''')
        parser_ssdp.add_argument('--max-attempts', dest='max_attempts', type=int, default=DEFAULT_MAX_SEARCH_ATTEMPTS,
                            help=f'''The number of M-SEARCH requests to send. Default: {DEFAULT_MAX_SEARCH_ATTEMPTS}''')
        parser_ssdp.set_defaults(func=self.cmd_ssdp)

        # ======================= serve

        parser_serve = subparsers.add_parser('serve', description="Serve a media file over HTTP until interrupted")
        parser_serve.add_argument('file', help='The media file to serve')
        parser_serve.add_argument('-p', '--port', type=int, default=0,
                            help='''The TCP port to listen on. Default: an ephemeral port''')
        parser_serve.add_argument('-b', '--bind', dest='bind_address', default='',
                            help='''The local address to bind to. Default: all addresses''')
        parser_serve.add_argument('--advertise-host', dest='advertise_host', default=None,
                            help='''The host announced in the media URL. Default: the preferred local IPv4 address''')
        parser_serve.set_defaults(func=self.cmd_serve)

        # ======================= cast

        parser_cast = subparsers.add_parser('cast', description="Play a media file on a Cast device")
        parser_cast.add_argument('device', help='The IPv4 address of the Cast device')
        parser_cast.add_argument('file', help='The media file to play')
        parser_cast.add_argument('--app', default=DEFAULT_RECEIVER_APP,
                            help=f'''The receiver app to launch. Default: {DEFAULT_RECEIVER_APP}''')
        parser_cast.add_argument('--hold', type=float, default=None,
                            help='''Seconds to keep serving the file after casting. Default: until interrupted''')
        parser_cast.add_argument('--advertise-host', dest='advertise_host', default=None,
                            help='''The host announced in the media URL. Default: the preferred local IPv4 address''')
        parser_cast.set_defaults(func=self.cmd_cast)

        # ======================= dlna

        parser_dlna = subparsers.add_parser('dlna', description="Play a media file on a DLNA renderer")
        parser_dlna.add_argument('control_url', help='The AVTransport control URL of the renderer')
        parser_dlna.add_argument('file', help='The media file to play')
        parser_dlna.add_argument('--hold', type=float, default=None,
                            help='''Seconds to keep serving the file after casting. Default: until interrupted''')
        parser_dlna.add_argument('--advertise-host', dest='advertise_host', default=None,
                            help='''The host announced in the media URL. Default: the preferred local IPv4 address''')
        parser_dlna.set_defaults(func=self.cmd_dlna)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code

        logging.basicConfig(level=logging.getLevelName(args.log_level.upper()))
        self._args = args
        func: Callable[[], Awaitable[int]] = args.func
        logging.debug(f"Running command {func.__name__}")
        try:
            rc = await func()
        except CmdExitError as ex:
            print(f"castit: error: {ex}", file=sys.stderr)
            return ex.exit_code
        except Exception as ex:
            if args.traceback:
                raise
            print(f"castit: error: {ex}", file=sys.stderr)
            return 1
        logging.debug(f"Command {func.__name__} returned {rc}")
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    return asyncio.run(CommandHandler(argv).arun())

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
