"""
Example: trigger the full parse chain for a local DOCX file and run it inline
(Docling + SQLite + Whoosh), without Redis.

Usage:
    python3 parsing_demo.py --docx /path/to/manual.docx --package-id manual --version-id v1
"""

import argparse
from pathlib import Path

from docs_parser.logging_config import setup_logging
from docs_parser.packages import (
    DOCXParse,
    InlineJobQueue,
    LocalPackageStorage,
    PackageRecord,
    SqlAlchemyParsingRepository,
    StoragePaths,
    VersionRecord,
    WorkerConfig,
    build_trigger_dispatcher,
    parse_job_id,
)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--docx", required=True, type=Path, help="Path to input DOCX")
    parser.add_argument("--package-id", required=True, help="Package id (for DB/paths)")
    parser.add_argument("--version-id", default="v1", help="Version id")
    parser.add_argument("--title", default=None, help="Package title")
    parser.add_argument("--db", default=Path("./data/docs_parser.db"), type=Path, help="SQLite DB path")
    parser.add_argument("--storage-root", default=Path("./data"), type=Path, help="Storage root for packages/assets")
    parser.add_argument("--whoosh-dir", default=Path("./data/whoosh"), type=Path, help="Whoosh index directory")
    parser.add_argument("--engine", default="docling", choices=("docling", "dummy"), help="Parsing engine")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()

    setup_logging(args.log_level)
    if not args.docx.exists():
        raise FileNotFoundError(f"DOCX not found: {args.docx}")

    args.db.parent.mkdir(parents=True, exist_ok=True)
    config = WorkerConfig(
        database_url=f"sqlite+pysqlite:///{args.db}",
        storage_root=str(args.storage_root),
        whoosh_index_dir=str(args.whoosh_dir),
        engine=args.engine,
        batch_size=25,
    )
    repo = SqlAlchemyParsingRepository(config.database_url)
    storage = LocalPackageStorage(StoragePaths(args.storage_root))
    original = storage.save_original_docx(args.package_id, args.version_id, args.docx)

    repo.save_package(PackageRecord(id=args.package_id, title=args.title or args.docx.stem, source="cli"))
    repo.save_version(VersionRecord(id=args.version_id, package_id=args.package_id, original_file_path=str(original)))

    DOCXParse(build_trigger_dispatcher(repo), InlineJobQueue(config)).execute(args.package_id, args.version_id)

    job = repo.get_job(parse_job_id(args.package_id, args.version_id))
    version = repo.get_version(args.package_id, args.version_id)
    print(f"Job finished with state={job.state.value}, pages={version.page_count}, error={job.error_message}")


if __name__ == "__main__":
    main()
