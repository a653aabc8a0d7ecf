# cli.py

import argparse
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from config import SystemConfig
from core.context import ServiceContext, initialize_directories
from core.errors import GalleryError, ValidationError
from core.models import CallerIdentity, ProcessingStatus
from security.input_validation import SecurityValidator
from utils.color_utils import to_hex
from utils.file_utils import get_image_files
from utils.logging_config import setup_logging

CLI_CALLER = CallerIdentity(user_id="cli")


def _record_summary(record):
    return {
        "id": record.id,
        "filename": record.filename,
        "status": record.status.value,
        "description": record.description,
        "tags": record.tags,
        "colors": [to_hex(color) for color in record.colors],
    }


def _output(records, args):
    """Print results and optionally save them as JSON"""
    print(f"\n{len(records)} result(s):")
    for i, record in enumerate(records, 1):
        tags = ", ".join(record.tags[:5])
        print(f"{i}. [{record.id}] {record.filename} ({record.status.value}) {tags}")

    if getattr(args, 'output', None):
        with open(args.output, 'w') as f:
            json.dump([_record_summary(r) for r in records], f, indent=2)
        print(f"\nResults saved to: {args.output}")


def ingest_command(context, args):
    """Upload every image in a directory and wait for extraction"""
    if not SecurityValidator.validate_directory(args.directory):
        raise ValidationError(f"Cannot read directory: {args.directory}")
    paths = get_image_files(args.directory, recursive=not args.no_recursive)
    if not paths:
        print("No images found.")
        return

    print(f"Found {len(paths)} images. Starting ingestion...")
    uploaded, rejected = [], []
    for path in tqdm(paths, desc="Uploading"):
        try:
            records = context.pipeline.upload(CLI_CALLER, [(Path(path).name, Path(path).read_bytes())])
        except GalleryError as e:
            rejected.append((path, str(e)))
            continue
        uploaded.extend(records)

    with tqdm(total=len(uploaded), desc="Extracting") as progress:
        for record in uploaded:
            context.pipeline.wait([record.id])
            progress.update(1)

    failed = sum(
        1 for r in context.store.get_many(r.id for r in uploaded).values()
        if r.status is ProcessingStatus.FAILED
    )
    print(f"Ingested {len(uploaded)} images ({failed} failed extraction, "
          f"{len(rejected)} rejected)")
    for path, reason in rejected:
        print(f"  rejected {path}: {reason}")


def search_command(context, args):
    page = context.search.search_by_text(CLI_CALLER, args.query, args.page, args.limit)
    print(f"{page.total} match(es), page {page.page}")
    _output(page.images, args)


def similar_command(context, args):
    _output(context.search.find_similar(CLI_CALLER, args.image_id, args.top_k), args)


def similar_file_command(context, args):
    """Query by an image file that is not in the gallery"""
    result = context.pipeline.extractor.extract(Path(args.query).read_bytes())
    _output(context.search.query_vector(CLI_CALLER, result.vector, args.top_k), args)


def color_command(context, args):
    _output(context.search.filter_by_color(CLI_CALLER, args.color, args.limit), args)


def delete_command(context, args):
    for image_id in args.image_ids:
        removed = context.pipeline.delete(CLI_CALLER, image_id)
        print(f"{image_id}: {'deleted' if removed else 'not found'}")


def rebuild_command(context, args):
    counts = context.pipeline.rebuild_indexes()
    print(f"Rebuilt indexes: {counts['vectors']} vectors, {counts['colors']} color entries")


def serve_command(config, args):
    from main import serve
    serve(config)


def build_parser():
    parser = argparse.ArgumentParser(
        description="Gallery Search - Command Line Interface"
    )
    parser.add_argument('-c', '--config', default='config.yaml',
                        help='Path to YAML configuration')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.set_defaults(func=serve_command, needs_context=False)

    ingest_parser = subparsers.add_parser('ingest', help='Ingest images from a directory')
    ingest_parser.add_argument('directory', help='Directory containing images')
    ingest_parser.add_argument('--no-recursive', action='store_true',
                               help='Do not descend into subdirectories')
    ingest_parser.set_defaults(func=ingest_command)

    search_parser = subparsers.add_parser('search', help='Text search over filenames, descriptions and tags')
    search_parser.add_argument('query', help='Search text')
    search_parser.add_argument('-p', '--page', type=int, default=1)
    search_parser.add_argument('-l', '--limit', type=int, default=20)
    search_parser.add_argument('-o', '--output', help='Output JSON file for results')
    search_parser.set_defaults(func=search_command)

    similar_parser = subparsers.add_parser('similar', help='Find images similar to a stored image')
    similar_parser.add_argument('image_id', type=int)
    similar_parser.add_argument('-k', '--top-k', type=int, default=10,
                                help='Number of results to return')
    similar_parser.add_argument('-o', '--output', help='Output JSON file for results')
    similar_parser.set_defaults(func=similar_command)

    file_parser = subparsers.add_parser('similar-file', help='Find images similar to an image file')
    file_parser.add_argument('query', help='Path to query image')
    file_parser.add_argument('-k', '--top-k', type=int, default=10)
    file_parser.add_argument('-o', '--output', help='Output JSON file for results')
    file_parser.set_defaults(func=similar_file_command)

    color_parser = subparsers.add_parser('color', help='Find images by dominant color')
    color_parser.add_argument('color', help='Color such as "#FF8800" or "rgb(255, 136, 0)"')
    color_parser.add_argument('-l', '--limit', type=int, default=20)
    color_parser.add_argument('-o', '--output', help='Output JSON file for results')
    color_parser.set_defaults(func=color_command)

    delete_parser = subparsers.add_parser('delete', help='Delete images')
    delete_parser.add_argument('image_ids', type=int, nargs='+')
    delete_parser.set_defaults(func=delete_command)

    rebuild_parser = subparsers.add_parser('rebuild', help='Rebuild both indexes from the store')
    rebuild_parser.set_defaults(func=rebuild_command)

    return parser


def main_cli(argv=None):
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    config = SystemConfig.load(args.config)
    setup_logging(config.log_level, config.log_dir)

    if not getattr(args, 'needs_context', True):
        args.func(config, args)
        return 0

    initialize_directories(config)
    context = ServiceContext.from_config(config)
    try:
        args.func(context, args)
    except GalleryError as e:
        logging.getLogger(__name__).error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        context.close()
    return 0


if __name__ == "__main__":
    sys.exit(main_cli())
