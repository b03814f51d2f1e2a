"""
Development Server Example

This demonstrates serving a build directory in front of an application
server: files that exist are served directly, everything else is proxied.
Features shown:
- Proxy fallback to an upstream, over pooled connections
- Forked workers, restarted with a backoff when they crash on startup
- HTTP Basic authentication

Usage:
    python devserver.py BUILD_DIRECTORY http://localhost:3000

Test with:
    curl -i -u dev:secret http://localhost:8000/index.html  # From the directory
    curl -i -u dev:secret http://localhost:8000/api/status  # From the upstream
"""

import sys

from vitrine import ConfigError, ServerConfig, run
from vitrine.utils.logging import error

if __name__ == "__main__":
	if len(sys.argv) != 3:
		error("Usage: devserver.py BUILD_DIRECTORY UPSTREAM_URL", "EUSAGE")
		sys.exit(2)
	try:
		config = ServerConfig.Make(
			sys.argv[1],
			port=8000,
			proxy=sys.argv[2],
			auth="dev:secret",
			workers=4,
			restartBackoff=0.5,
		)
	except ConfigError as e:
		error(str(e), "ECONFIG")
		sys.exit(2)
	run(config)

# EOF
