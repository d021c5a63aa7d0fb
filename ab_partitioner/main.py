import argparse
import sys
from pathlib import Path

from ab_partitioner.domain.models import LayoutVariant
from ab_partitioner.logging import LoggerFactory, setup_logging
from ab_partitioner.storage.exceptions import (
    InputImageNotFoundError,
    StorageError,
    UsageError,
)
from ab_partitioner.storage.pipeline import ConversionOptions, convert_image
from ab_partitioner.storage.validation import validate_conversion_request


def build_parser():
    parser = argparse.ArgumentParser(
        prog="ab-partitioner",
        description="Convert a single-boot Raspberry Pi image into an A/B partition image",
    )
    parser.add_argument("input_image", type=Path, help="Original image file")
    parser.add_argument("output_image", type=Path, help="A/B image file to create")
    parser.add_argument(
        "--variant",
        choices=[variant.value for variant in LayoutVariant],
        default=None,
        help="Partition layout (default: from settings, 'tryboot')",
    )
    parser.add_argument(
        "--no-digest",
        action="store_true",
        help="Do not write the <output>.sha256 sidecar",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw command output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        options = ConversionOptions.from_settings(
            args.input_image,
            args.output_image,
            variant=args.variant,
            write_digest=False if args.no_digest else None,
        )
        validate_conversion_request(
            options.input_image, options.output_image, tools=options.required_tools
        )
    except InputImageNotFoundError as error:
        log.error(str(error))
        parser.print_usage(sys.stderr)
        return 1
    except UsageError as error:
        log.error(str(error))
        return 1
    except ValueError as error:
        log.error("Invalid configuration: {}", error)
        return 1

    try:
        convert_image(options)
    except StorageError as error:
        log.error("Conversion failed: {}", error)
        return 1
    except Exception:
        log.exception("Unexpected error during conversion")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
