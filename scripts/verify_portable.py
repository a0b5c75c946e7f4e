"""
verify_portable.py – Post-build smoke check for portable artifacts.

Looks in the build output directory (default: ./dist next to the project
root) for at least one portable-looking artifact and exits with:

  0  an artifact was found
  2  the output directory does not exist
  3  the directory holds no recognised artifact
  4  anything else went wrong

Usage:
    python scripts/verify_portable.py [DIST_DIR]
"""

import os
import re
import sys

EXIT_OK = 0
EXIT_NO_DIST = 2
EXIT_NO_ARTIFACT = 3
EXIT_ERROR = 4

ARTIFACT_PATTERN = re.compile(r"\.(AppImage|zip|exe|dmg|tar\.gz)$")

DEFAULT_DIST = os.path.join(os.path.dirname(os.path.abspath(__file__)), os.pardir, "dist")


class VerificationFailed(Exception):
    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


def find_dist(path: str) -> str:
    dist = os.path.abspath(path)
    if not os.path.isdir(dist):
        raise VerificationFailed(f"Output directory not found: {dist}", EXIT_NO_DIST)
    return dist


def find_artifact(dist: str) -> str:
    files = sorted(os.listdir(dist))
    for name in files:
        if ARTIFACT_PATTERN.search(name):
            return name
    raise VerificationFailed(f"No portable artifact in {dist}: {files}", EXIT_NO_ARTIFACT)


def find_portable_marker(dist: str):
    """Return an entry whose name suggests a packaged/portable app, or None."""
    for name in sorted(os.listdir(dist)):
        lowered = name.lower()
        if "app" in lowered or "portable" in lowered:
            return name
    return None


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        dist = find_dist(argv[0] if argv else DEFAULT_DIST)
        print("Build artifact found:", find_artifact(dist))

        marker = find_portable_marker(dist)
        if marker:
            print("Packaged layout marker:", marker)
        else:
            print("No obvious packaging marker; this can be normal on some platforms.")

        print("Portable verification: OK")
        return EXIT_OK
    except VerificationFailed as exc:
        print(exc, file=sys.stderr)
        return exc.exit_code
    except Exception as exc:
        print(f"Error during portable verification: {exc!r}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
