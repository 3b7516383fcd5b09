import logging

from mp4flv.configs import settings
from mp4flv.remuxer.errors import IoFailure, RemuxError
from mp4flv.remuxer.media_source import FileSource
from mp4flv.remuxer.mp4_to_flv import ConversionResult, convert

logger = logging.getLogger(__name__)


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=level or settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def convert_file(input_path: str, output_path: str) -> ConversionResult:
    """
    Convert the MP4 at ``input_path`` into an FLV at ``output_path``.

    Raises:
        RemuxError: the conversion aborted; bytes already flushed to
            ``output_path`` are left as they are.
    """
    try:
        with FileSource.open(input_path) as source:
            try:
                sink = open(output_path, "wb")
            except OSError as e:
                raise IoFailure(f"Cannot open {output_path} for writing: {e}") from e
            with sink:
                return convert(source, sink)
    except RemuxError as e:
        logger.error("[main] Conversion of %s aborted (%s): %s", input_path, e.category, e)
        raise


def main() -> None:
    configure_logging()
    convert_file(settings.input_path, settings.output_path)


if __name__ == "__main__":
    main()
