#!/usr/bin/env python3
"""Set up a local memcore checkout.

Usage:
    python install.py          # Install into .venv
    python install.py --dev    # Also install pytest
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)

FTS5_PROBE = (
    "import sqlite3; c = sqlite3.connect(':memory:'); "
    "c.execute('CREATE VIRTUAL TABLE t USING fts5(x)')"
)


def _venv_paths(project_dir: str) -> tuple[str, str, str]:
    venv_dir = os.path.join(project_dir, ".venv")
    bin_dir = "Scripts" if platform.system() == "Windows" else "bin"
    return venv_dir, os.path.join(venv_dir, bin_dir, "pip"), os.path.join(venv_dir, bin_dir, "python")


def _has_fts5(python_exe: str) -> bool:
    return subprocess.run([python_exe, "-c", FTS5_PROBE], capture_output=True).returncode == 0


def _seed_files(project_dir: str) -> None:
    data_dir = os.path.join(project_dir, "data")
    os.makedirs(os.path.join(data_dir, "daily"), exist_ok=True)
    os.makedirs(os.path.join(data_dir, "tmp"), exist_ok=True)

    for src, dst in [("config.example.yaml", "config.yaml"), (".env.example", ".env")]:
        src_path = os.path.join(project_dir, src)
        dst_path = os.path.join(project_dir, dst)
        if os.path.exists(dst_path):
            print(f"{dst} already exists, skipping.")
        elif os.path.exists(src_path):
            shutil.copy(src_path, dst_path)
            print(f"Created {dst} from {src}")


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Error: Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required. "
            f"You have {sys.version_info.major}.{sys.version_info.minor}."
        )

    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir, pip, python_exe = _venv_paths(project_dir)

    if not os.path.isdir(venv_dir):
        print("Creating virtual environment...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])

    target = ".[dev]" if "--dev" in sys.argv else "."
    print(f"Installing memcore ({target})...")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])
    subprocess.check_call([pip, "install", "-e", target], cwd=project_dir)

    if not _has_fts5(python_exe):
        print("Warning: this SQLite build lacks FTS5; archive search will fall back to LIKE.")

    _seed_files(project_dir)

    activate = r".\.venv\Scripts\activate" if platform.system() == "Windows" else "source .venv/bin/activate"
    print()
    print("memcore installed. Next steps:")
    print("  1. Set ANTHROPIC_API_KEY in .env")
    print("  2. Review config.yaml (models, capabilities, path prefixes)")
    print(f"  3. {activate}")
    print("  4. python -m memcore config-check")
    print("  5. python -m memcore run")


if __name__ == "__main__":
    main()
