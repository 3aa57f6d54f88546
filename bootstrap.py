"""
Bootstrap script to ensure essential configuration files exist in the config volume.
Copies factory defaults from ./defaults to the config directory if files are missing.
"""
import json
import os
import shutil
from pathlib import Path

# Project structure
PROJECT_ROOT = Path(__file__).parent
DEFAULTS_DIR = PROJECT_ROOT / "defaults"


def ensure_config_files(config_dir: Path | None = None) -> list[str]:
    """Restore missing config files from the defaults folder. Returns restored names."""
    config_dir = config_dir or Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
    config_dir.mkdir(parents=True, exist_ok=True)
    restored: list[str] = []

    if not DEFAULTS_DIR.exists():
        print(f"[Bootstrap] Warning: Defaults directory not found at {DEFAULTS_DIR}")
        return restored

    # 1. Settings overlay
    src = DEFAULTS_DIR / "import_settings.json"
    dst = config_dir / "import_settings.json"
    if src.exists():
        if not dst.exists():
            print("[Bootstrap] Restoring missing config file: import_settings.json")
            shutil.copy2(src, dst)
            restored.append(dst.name)
        else:
            # Repair corrupted settings
            try:
                if dst.stat().st_size == 0:
                    raise ValueError("Empty file")
                with open(dst, "r", encoding="utf-8") as f:
                    json.load(f)
            except (json.JSONDecodeError, ValueError):
                print("[Bootstrap] Repairing invalid import_settings.json")
                shutil.copy2(src, dst)
                restored.append(dst.name)

    # 2. Jinja2 templates
    for src_template in DEFAULTS_DIR.glob("*.j2"):
        dst_template = config_dir / src_template.name
        if not dst_template.exists():
            print(f"[Bootstrap] Restoring missing template: {src_template.name}")
            shutil.copy2(src_template, dst_template)
            restored.append(src_template.name)

    return restored


if __name__ == "__main__":
    ensure_config_files()
