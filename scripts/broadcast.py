#!/usr/bin/env python3
"""Send one broadcast to every active push subscription.

Intended to be run from a scheduler (e.g. a cron job) instead of calling
POST /api/push/broadcast. Reads the same environment as the web app.
"""

import argparse
import json
import sys

from app import create_app
from dispatcher import DEFAULT_BODY, DEFAULT_TITLE, DEFAULT_URL
from errors import ConfigurationError


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--title", default=DEFAULT_TITLE)
    parser.add_argument("--body", default=DEFAULT_BODY)
    parser.add_argument("--url", default=DEFAULT_URL)
    args = parser.parse_args(argv)

    app = create_app()
    dispatcher = app.extensions["push_dispatcher"]
    try:
        result = dispatcher.broadcast_all(title=args.title, body=args.body, url=args.url)
    except ConfigurationError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1

    print(json.dumps(result.to_response()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
