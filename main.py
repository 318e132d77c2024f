"""Script Kill - dev launcher. Starts the API server in watch mode."""

import argparse
import os
import signal
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
BACKEND_PORT = os.getenv("BACKEND_PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Script Kill dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--mcp", action="store_true",
                        help="Also start the MCP host-action server over stdio")
    args = parser.parse_args()

    # Build env for subprocesses so every process picks up the same data dir
    env = os.environ.copy()
    if args.data_dir:
        args.data_dir.mkdir(parents=True, exist_ok=True)
        env["DATA_DIR"] = str(args.data_dir.resolve())

    procs: list[subprocess.Popen] = []

    def shutdown(*_):
        print("\nShutting down...")
        for p in procs:
            p.terminate()
        for p in procs:
            p.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print(f"Starting backend on http://localhost:{BACKEND_PORT} ...")
    procs.append(subprocess.Popen(
        ["uv", "run", "uvicorn", "backend.app:app", "--reload", "--host", HOST, "--port", BACKEND_PORT],
        cwd=ROOT, env=env,
    ))

    if args.mcp:
        print("Starting MCP server on stdio ...")
        procs.append(subprocess.Popen(
            ["uv", "run", "python", "-m", "backend.mcp_server"],
            cwd=ROOT, env=env,
        ))

    for p in procs:
        p.wait()


if __name__ == "__main__":
    main()
