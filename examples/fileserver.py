"""
Static File Server Example

This demonstrates serving a directory from Python rather than from the
command line.
Features shown:
- Configuration through `ServerConfig.Make`
- Directory listings and `index.html` files
- A fixed `max-age` for all files
- CORS headers, so that the files can be fetched from any page

Usage:
    python fileserver.py [DIRECTORY]

Test with:
    curl -i http://localhost:8000/
    curl -i -H 'Accept-Encoding: gzip' http://localhost:8000/README.md
"""

import sys

from vitrine import ConfigError, ServerConfig, run
from vitrine.utils.logging import error, info

if __name__ == "__main__":
	root = sys.argv[1] if len(sys.argv) > 1 else "."
	try:
		config = ServerConfig.Make(root, port=8000, maxAge=60, cors=True)
	except ConfigError as e:
		error(str(e), "ECONFIG")
		sys.exit(2)
	info("Starting static file server", Root=config.root)
	run(config)

# EOF
