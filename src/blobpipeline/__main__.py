"""
Upload a file, read it back, then delete it.

Usage:
    python -m blobpipeline sample.txt
    python -m blobpipeline sample.txt --blob test.txt --container scratch -v

Account and retry settings come from BLOBPIPELINE_* variables (see
blobpipeline.config). The downloaded bytes are written to stdout.
"""

import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path

from azure.core.credentials import AzureNamedKeyCredential

from .config import StorageSettings
from .errors import BlobPipelineError
from .handles import new_service_handle
from .models import BlobHTTPHeaders, DeleteSnapshotsOption
from .pipeline import PipelineOptions, new_pipeline

logger = logging.getLogger("blobpipeline")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blobpipeline",
        description="Round-trip a file through blob storage.",
    )
    parser.add_argument("file", type=Path, help="File to upload")
    parser.add_argument("--blob", help="Blob name (default: the file name)")
    parser.add_argument("--container", help="Container (default: BLOBPIPELINE_CONTAINER)")
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every request")
    return parser


async def round_trip(
    settings: StorageSettings, path: Path, blob_name: str, container: str
) -> bytes:
    credential = AzureNamedKeyCredential(settings.account_name, settings.account_key_str)
    options = PipelineOptions(retry=settings.retry, request_log=settings.request_log)

    async with new_pipeline(credential, options) as pipeline:
        service = new_service_handle(pipeline, settings.service_url)
        blob = service.get_container(container).get_blob(blob_name)

        content_type, _ = mimetypes.guess_type(path.name)
        with path.open("rb") as f:
            uploaded = await blob.upload(
                f, BlobHTTPHeaders(content_type=content_type or "application/octet-stream")
            )
        logger.info("Uploaded %s (etag %s)", blob.url, uploaded.etag)

        download = await blob.download()
        async with download.body() as body:
            data = await body.readall()
        logger.info("Downloaded %d bytes", len(data))

        await blob.delete(DeleteSnapshotsOption.INCLUDE)
        logger.info("Deleted %s", blob.url)
    return data


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not args.verbose:
        # The SDK logs every request and response header at INFO.
        logging.getLogger("azure").setLevel(logging.WARNING)

    try:
        settings = StorageSettings.load(args.env_file)
        data = asyncio.run(
            round_trip(
                settings,
                args.file,
                args.blob or args.file.name,
                args.container or settings.container,
            )
        )
    except (BlobPipelineError, OSError) as e:
        logger.error("%s", e)
        return 1

    sys.stdout.buffer.write(data)
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
