import argparse
import logging
import sys

import requests

from remoteFile import RemoteFile
from zipHash import process_archive
from zipHeaders import ZipHashError

logger = logging.getLogger(__name__)


def open_archive(name):
    if name.startswith(("http://", "https://")):
        return RemoteFile(name)
    return open(name, "rb")


def main(archives, output=None, allow_comment=False):
    output = output or sys.stdout
    status = 0
    for name in archives:
        try:
            with open_archive(name) as stream:
                context = process_archive(stream, name, allow_comment=allow_comment)
        except ZipHashError as e:
            print(f"Error: {name}: {e.stage}: {e}", file=sys.stderr)
            status = 1
            continue
        except (OSError, requests.RequestException) as e:
            print(f"Error: {name}: {e}", file=sys.stderr)
            status = 1
            continue

        lines = context.lines()
        for line in lines:
            print(line, file=output)
        if not lines:
            logger.warning("%s: no ZipCrypto encrypted entries found", name)
    return status


def cli(argv=None):
    parser = argparse.ArgumentParser(
        description="Extract $pkzip2$ hashes from ZipCrypto encrypted ZIP archives."
    )
    parser.add_argument("archives", type=str, nargs="+", help="ZIP archive paths or http(s) URLs.")
    parser.add_argument("-o", "--output", type=str, help="Write hashes to this file instead of stdout.")
    parser.add_argument(
        "--allow-comment",
        action="store_true",
        help="Search for the end of central directory record before a trailing archive comment.",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log parsing details.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log errors.")
    args = parser.parse_args(argv)

    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")

    if args.output:
        try:
            output = open(args.output, "w")
        except OSError as e:
            print(f"Error: {args.output}: {e}", file=sys.stderr)
            return 1
        with output:
            return main(args.archives, output, args.allow_comment)
    return main(args.archives, allow_comment=args.allow_comment)


if __name__ == "__main__":
    sys.exit(cli())
