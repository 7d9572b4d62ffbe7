"""
Entrypoint: load config and .env, init logging, submit one request per URL
to a queue and report each outcome.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from urllib.parse import urlparse

import structlog
from dotenv import load_dotenv

from .config import Config
from .errors import InvalidArgument
from .logs import configure_logging
from .notification import AggregatingObserver
from .queue import RequestQueue
from .request import RequestUnit

logger = structlog.get_logger(__name__)


class FetchReporter:
    """Target for the success/failure handlers named in API tables."""

    def on_success(self, unit, payload):
        logger.info("fetch_succeeded",
                    url=unit.url,
                    status_code=unit.status_code,
                    content_type=unit.response_headers.get('content-type'),
                    size=unit.bytes_received,
                    destination=str(unit.destination) if unit.streamed else None)

    def on_failure(self, unit, error):
        logger.error("fetch_failed",
                     url=unit.url,
                     error_type=type(error).__name__,
                     error=error.message)


def destination_for(url: str, directory: Path, index: int, taken=None) -> Path:
    """Pick a file under ``directory`` for the response to ``url``.

    Names already in ``taken`` get a numeric suffix so concurrent downloads
    never share a file; the chosen name is added to ``taken``.
    """
    name = Path(urlparse(url).path).name
    if name in ('', '..'):
        name = f"response-{index}"
    if taken is not None:
        stem, suffix = Path(name).stem, Path(name).suffix
        candidate, count = name, 1
        while candidate in taken:
            candidate = f"{stem}-{count}{suffix}"
            count += 1
        taken.add(candidate)
        name = candidate
    return directory / name


def parse_header(value: str):
    name, sep, header_value = value.partition(':')
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"Headers must look like 'Name: value', got {value!r}")
    return name.strip(), header_value.strip()


def parse_parameter(value: str):
    name, sep, param_value = value.partition('=')
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"Parameters must look like 'name=value', got {value!r}")
    return name, param_value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='webservice-fetch', description="Fetch URLs asynchronously.")
    parser.add_argument('urls', nargs='*', help="URLs to fetch")
    parser.add_argument('-m', '--method', default='GET', help="HTTP method (default GET)")
    parser.add_argument('-H', '--header', dest='headers', action='append', type=parse_header, default=[],
                        help="Request header 'Name: value'; repeatable")
    parser.add_argument('-d', '--data', dest='parameters', action='append', type=parse_parameter, default=[],
                        help="Parameter 'name=value'; repeatable")
    parser.add_argument('-o', '--output-dir', type=Path, help="Stream responses into this directory")
    parser.add_argument('--api', action='append', default=[], help="Named API from the config file; repeatable")
    parser.add_argument('--config', help="Path to an alternative config.yaml")
    return parser


def build_units(args, settings: Config, reporter: FetchReporter, observer: AggregatingObserver):
    units = []
    targets = [(url, None) for url in args.urls] + [(None, name) for name in args.api]
    taken = set()

    for index, (url, api_name) in enumerate(targets):
        if api_name is not None:
            api_info = settings.api(api_name)
            url = api_info.get('url', '')
            destination = destination_for(url, args.output_dir, index, taken) if args.output_dir else None
            unit = RequestUnit.from_api_info(api_info, target=reporter,
                                             parameters=args.parameters or None,
                                             destination=destination, observer=observer)
        else:
            destination = destination_for(url, args.output_dir, index, taken) if args.output_dir else None
            unit = RequestUnit.for_url(url, args.method, reporter, 'on_success', 'on_failure',
                                       parameters=args.parameters or None, destination=destination)
            unit.observer = observer

        for name, value in args.headers:
            unit.set_header(name, value)
        units.append(unit)
    return units


async def run(args, settings: Config) -> int:
    reporter = FetchReporter()
    observer = AggregatingObserver()

    try:
        units = build_units(args, settings, reporter, observer)
    except (InvalidArgument, KeyError) as e:
        logger.error("invalid_request", error=str(e))
        return 2

    if args.output_dir:
        args.output_dir.mkdir(parents=True, exist_ok=True)

    async with RequestQueue.from_config(settings) as queue:
        for unit in units:
            queue.submit(unit)
        await queue.drain()

    logger.info("fetch_finished", completed=len(observer.completed), failed=len(observer.failed))
    return 0 if len(observer.completed) == len(units) else 1


def main(argv=None):
    """Main entry point for webservice-fetch."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.urls and not args.api:
        parser.error("give at least one URL or --api NAME")

    settings = Config(args.config) if args.config else Config()
    log_config = settings.logging
    configure_logging(log_config.get('level', 'INFO'), log_config.get('format', 'json'))

    try:
        exit_code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("shutting_down_gracefully")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
