"""
Onionize command line entry point.

Publishes a directory, a file or the contents of a zip archive as a tor
onion service and prints its address.
"""
import argparse
import getpass
import logging
import sys

from config import DEFAULT_CONTROL, VERSION, PublicationConfig

logger = logging.getLogger(__name__)


def configure_logging(debug: bool):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='onionize',
        description="Serve a directory, file or zip archive as an onion service."
    )
    parser.add_argument('path', help="directory, file or zip archive to publish")
    parser.add_argument('-z', '--zip', action='store_true',
                        help="serve the contents of the zip archive at PATH")
    parser.add_argument('--no-slug', action='store_true',
                        help="do not gate the service behind a secret URL prefix")
    parser.add_argument('--control', default=None,
                        help=f"tor control endpoint (default: {DEFAULT_CONTROL})")
    parser.add_argument('--control-password', default=None,
                        help="tor control port password")
    parser.add_argument('-p', '--passphrase', action='store_true',
                        help="prompt for a passphrase to derive a stable onion address")
    parser.add_argument('--debug', action='store_true', help="verbose logging")
    parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PublicationConfig:
    config = PublicationConfig.from_env(
        args.path,
        archive=args.zip,
        slug=not args.no_slug,
        control=args.control,
        control_password=args.control_password,
        debug=args.debug or None,
    )
    if args.passphrase:
        config = config.with_passphrase(getpass.getpass("Enter your passphrase for onion identity: "))
    return config


def main(argv=None) -> int:
    """Main application entry point."""
    args = parse_args(argv)
    config = build_config(args)
    configure_logging(config.debug)

    from core.lifecycle import TransportLifecycleController

    controller = TransportLifecycleController(config)
    publication = controller.start()

    result = publication.wait_result()
    if not result.ok:
        logger.error("%s", result.error)
        return 1

    print(result.url, flush=True)

    try:
        while not publication.stopped.wait(1):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        publication.cancel()
        publication.stopped.wait(5)

    return 1 if publication.fatal_error else 0


def cli():
    sys.exit(main())


if __name__ == '__main__':
    cli()
