#!/usr/bin/env python3
"""
Download the configured models into models/ for offline use.

Usage:
    python scripts/download_model.py            # all configured models
    python scripts/download_model.py birefnet   # one model by name
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from badgephoto.env_config import load_settings
from badgephoto.errors import FetchFailure
from badgephoto.model_fetch import fetch_model_bytes, is_remote


def configured_models(settings) -> dict:
    """name -> source for every model the pipeline uses"""
    models = {
        "face_detector": settings.face_detector_model,
        "segmenter": settings.segmenter_model,
    }
    models.update(settings.matte_models)
    return models


def download_model(name: str, source: str, timeout: int, models_dir: Path = Path("models")) -> bool:
    """Download one model file"""
    if not is_remote(source):
        if Path(source).is_file():
            size_mb = Path(source).stat().st_size / (1024 * 1024)
            print(f"✅ {name}: local file {source} ({size_mb:.1f} MB)")
            return True
        print(f"❌ {name}: local file {source} not found, nothing to download")
        return False

    models_dir.mkdir(exist_ok=True)
    filename = source.split("?")[0].rstrip("/").split("/")[-1] or f"{name}.bin"
    output_path = models_dir / filename

    if output_path.exists():
        size_mb = output_path.stat().st_size / (1024 * 1024)
        print(f"✅ {name}: already exists {output_path} ({size_mb:.1f} MB)")
        return True

    print(f"📥 Downloading {name}...")
    print(f"   URL: {source}")

    try:
        content, meta = fetch_model_bytes(source, timeout=timeout)
    except FetchFailure as e:
        print(f"❌ Download failed: {e}")
        return False

    output_path.write_bytes(content)
    print(f"✅ Download complete!")
    print(f"   File: {output_path}")
    print(f"   Size: {meta['size_bytes'] / (1024 * 1024):.1f} MB")
    return True


if __name__ == "__main__":
    settings = load_settings()
    models = configured_models(settings)

    selected = sys.argv[1:] or list(models.keys())
    unknown = [name for name in selected if name not in models]
    if unknown:
        print(f"❌ Unknown model(s): {unknown}")
        print(f"Available: {list(models.keys())}")
        sys.exit(1)

    print("=" * 60)
    print("Badge Photo Model Downloader")
    print("=" * 60)

    results = [download_model(name, models[name], settings.model_fetch_timeout) for name in selected]
    sys.exit(0 if all(results) else 1)
