import argparse
import signal
from pathlib import Path

from mender_convert.__version__ import __version__
from mender_convert.config import settings
from mender_convert.exceptions import ConversionError
from mender_convert.logging import LoggerFactory, setup_logging
from mender_convert.pipeline import (
    COMMANDS,
    ConversionOptions,
    PipelineContext,
    PipelineController,
    pipeline_for,
)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="mender-convert",
        description="Convert raw disk images into Mender A/B disk images and artifacts",
    )
    parser.add_argument("command", choices=COMMANDS, help="Conversion to run")
    parser.add_argument("-r", "--raw-disk-image", help="Raw disk image to convert")
    parser.add_argument("-m", "--mender-disk-image", help="Mender disk image (.sdimg)")
    parser.add_argument(
        "-s",
        "--data-part-size-mb",
        type=int,
        default=None,
        help="Data partition size in MiB (default: %d)" % settings.DEFAULT_DATA_PART_SIZE_MB,
    )
    parser.add_argument("-d", "--device-type", help="Target device type")
    parser.add_argument(
        "-p",
        "--rootfs-partition-id",
        choices=["primary", "secondary"],
        default=None,
        help="Rootfs slot to extract (default: primary)",
    )
    parser.add_argument("-i", "--demo-host-ip", help="Demo server IP address")
    parser.add_argument("-c", "--server-cert", help="Server certificate file")
    parser.add_argument("-u", "--server-url", help="Production server URL")
    parser.add_argument("-t", "--tenant-token", help="Hosted server tenant token")
    parser.add_argument("-g", "--mender-client", help="Update client binary")
    parser.add_argument("-b", "--toolchain", help="Bootloader toolchain id")
    parser.add_argument("-n", "--artifact-name", help="Artifact name")
    parser.add_argument(
        "-k", "--keep", action="store_true", help="Keep intermediate and partial files"
    )
    parser.add_argument("--work-dir", help="Working directory")
    parser.add_argument("--output-dir", help="Output directory")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output and trace.log")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"signal {signum}")


def main(argv=None):
    args = build_parser().parse_args(argv)

    work_dir = Path(args.work_dir) if args.work_dir else settings.get_path("work_dir", Path("work"))
    log_dir = settings.get_path("log_dir", work_dir / "logs")
    build_log = setup_logging(debug=args.debug, trace=args.trace, log_dir=log_dir)
    signal.signal(signal.SIGTERM, _raise_interrupt)
    log = LoggerFactory.for_system()
    log.debug(f"mender-convert {__version__}: {args.command}")

    try:
        options = ConversionOptions.from_args(args)
        context = PipelineContext.create(
            args.command,
            options,
            build_log=build_log,
            work_dir=work_dir,
            output_dir=Path(args.output_dir) if args.output_dir else None,
        )
    except ConversionError as error:
        log.error(f"{error} (see {build_log})")
        return 1

    result = PipelineController(context).run(pipeline_for(args.command))
    if result.succeeded:
        for output in result.outputs:
            log.info(f"Wrote {output}")
        return 0

    error = result.error
    if isinstance(error, KeyboardInterrupt):
        log.error(f"Interrupted (see {build_log})")
    elif isinstance(error, ConversionError):
        log.error(f"{error} (see {build_log})")
    else:
        log.opt(exception=error).debug("Unexpected error")
        log.error(f"Unexpected error: {error!r} (see {build_log})")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
