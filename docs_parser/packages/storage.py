from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class StoragePaths:
    root: Path

    def package_dir(self, package_id: str) -> Path:
        return self.root / "packages" / str(package_id)

    def version_dir(self, package_id: str, version_id: str) -> Path:
        return self.package_dir(package_id) / "versions" / str(version_id)

    def original_docx_path(self, package_id: str, version_id: str) -> Path:
        return self.version_dir(package_id, version_id) / "original.docx"

    def engine_output_path(self, package_id: str, version_id: str) -> Path:
        return self.version_dir(package_id, version_id) / "engine_output.json"

    def asset_path(self, package_id: str, version_id: str, asset_id: str) -> Path:
        return self.version_dir(package_id, version_id) / "assets" / f"{asset_id}.png"


class LocalPackageStorage:
    """
    Manages filesystem layout for package versions, parser outputs, and assets.
    """

    def __init__(self, storage_paths: StoragePaths):
        self.paths = storage_paths

    def ensure_base_dirs(self, package_id: str, version_id: str) -> None:
        base = self.paths.version_dir(package_id, version_id)
        (base / "assets").mkdir(parents=True, exist_ok=True)

    def save_original_docx(self, package_id: str, version_id: str, source: Path) -> Path:
        self.ensure_base_dirs(package_id, version_id)
        target = self.paths.original_docx_path(package_id, version_id)
        if Path(source).resolve() != target.resolve():
            shutil.copy2(source, target)
        return target

    def write_original_bytes(self, package_id: str, version_id: str, data: bytes) -> Path:
        self.ensure_base_dirs(package_id, version_id)
        target = self.paths.original_docx_path(package_id, version_id)
        target.write_bytes(data)
        return target

    def find_original_docx(self, package_id: str, version_id: str) -> Optional[Path]:
        path = self.paths.original_docx_path(package_id, version_id)
        return path if path.exists() else None

    def write_engine_output(self, package_id: str, version_id: str, document_json: dict) -> Path:
        self.ensure_base_dirs(package_id, version_id)
        target = self.paths.engine_output_path(package_id, version_id)
        with target.open("w", encoding="utf-8") as f:
            json.dump(document_json, f, ensure_ascii=False, indent=2)
        return target

    def write_asset_image(self, package_id: str, version_id: str, asset_id: str, data: bytes) -> Path:
        self.ensure_base_dirs(package_id, version_id)
        target = self.paths.asset_path(package_id, version_id, asset_id)
        target.write_bytes(data)
        return target

    def clear_assets(self, package_id: str, version_id: str) -> None:
        assets_dir = self.paths.version_dir(package_id, version_id) / "assets"
        if assets_dir.exists():
            shutil.rmtree(assets_dir)
        assets_dir.mkdir(parents=True, exist_ok=True)

    def delete_version(self, package_id: str, version_id: str) -> None:
        target = self.paths.version_dir(package_id, version_id)
        if target.exists():
            shutil.rmtree(target)
            logger.info("Removed storage for package %s version %s", package_id, version_id)
