"""
Healthcheck module for the settlement worker container.

Used as the container healthcheck to verify that the worker can start and
import its modules.  It does not perform a liveness probe of the pipeline
itself.
"""

import sys


def main() -> None:
    try:
        # Importing the package pulls in every third-party dependency
        import settlement.pipeline  # noqa: F401
    except Exception as exc:  # pragma: no cover - healthcheck only
        print(f"Import error: {exc}", file=sys.stderr)
        sys.exit(1)
    print("ok")


if __name__ == "__main__":
    main()
