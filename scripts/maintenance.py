# scripts/maintenance.py

import argparse
import sys
from datetime import datetime
from pathlib import Path

import psutil

from config import SystemConfig
from core.color_index import ColorIndex
from core.database import FeatureStore
from core.models import ProcessingStatus
from core.vector_index import VectorIndex
from utils.file_utils import format_file_size


def compact_database(config: SystemConfig):
    """Back up and compact the SQLite database"""
    db_path = config.database_path
    backup_path = f"{db_path}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    store = FeatureStore(db_path, dimension=config.feature_extraction.dimension)
    try:
        store.backup(backup_path)
        print(f"Backup created: {backup_path}")
        store.vacuum()
    finally:
        store.close()
    print("Database compacted")
    return backup_path


def verify_indexes(config: SystemConfig) -> bool:
    """Rebuild both indexes from the store and check they cover every completed image"""
    store = FeatureStore(config.database_path, dimension=config.feature_extraction.dimension)
    try:
        expected = store.count(ProcessingStatus.COMPLETED)
        vector_index = VectorIndex.from_config(store.dimension, config.vector_index)
        color_index = ColorIndex.from_config(config.color_index,
                                             max_colors=config.feature_extraction.max_colors)
        vectors = vector_index.rebuild((r.id, r.vector) for r in store.iter_completed())
        colors = color_index.rebuild((r.id, r.colors) for r in store.iter_completed())
    finally:
        store.close()

    print(f"Completed images: {expected}")
    print(f"Vector index:     {vectors}")
    print(f"Color index:      {colors} ({color_index.bucket_count} buckets)")
    if vectors != expected:
        print("Vector index does not cover every completed image")
        return False
    return True


def generate_report(config: SystemConfig, output_dir: str = "reports"):
    """Generate system health report"""
    store = FeatureStore(config.database_path, dimension=config.feature_extraction.dimension)
    try:
        counts = store.status_counts()
    finally:
        store.close()

    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(config.data_dir)
    uploads_size = sum(f.stat().st_size for f in Path(config.upload_dir).rglob('*') if f.is_file())

    report = f"""
    Gallery Search - System Report

    Database Statistics:
       - Total images: {sum(counts.values())}
       - Completed: {counts.get(ProcessingStatus.COMPLETED.value, 0)}
       - Pending: {counts.get(ProcessingStatus.PENDING.value, 0)}
       - Failed: {counts.get(ProcessingStatus.FAILED.value, 0)}
       - Database size: {format_file_size(Path(config.database_path).stat().st_size)}
       - Uploaded originals: {format_file_size(uploads_size)}

    System Resources:
       - Memory usage: {memory.percent}%
       - Available memory: {memory.available / (1024**3):.2f} GB
       - Disk usage: {disk.percent}%
       - Available disk: {disk.free / (1024**3):.2f} GB

    Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
    """

    print(report)

    # Save to file
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    with open(Path(output_dir) / f"health_report_{datetime.now().strftime('%Y%m%d')}.txt", 'w') as f:
        f.write(report)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Maintenance utilities")
    parser.add_argument('action', choices=['compact', 'verify', 'report'])
    parser.add_argument('-c', '--config', default='config.yaml')

    args = parser.parse_args()
    config = SystemConfig.load(args.config)

    if args.action == 'compact':
        compact_database(config)
    elif args.action == 'verify':
        sys.exit(0 if verify_indexes(config) else 1)
    elif args.action == 'report':
        generate_report(config)
