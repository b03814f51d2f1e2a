import argparse
import sys

from .config import HOST, PORT, ConfigError, ServerConfig
from .server import run
from .utils.logging import error


def parser() -> argparse.ArgumentParser:
	p = argparse.ArgumentParser(
		prog="vitrine",
		description="Serves a directory over HTTP(S), with caching, compression, "
		"directory listings and an optional upstream to proxy missing files to.",
	)
	p.add_argument("root", nargs="?", default=".", help="Directory to serve")
	p.add_argument("-H", "--host", default=HOST, help="Address to bind to")
	p.add_argument("-p", "--port", type=int, default=PORT, help="Port to listen on")
	p.add_argument("--tls", action="store_true", help="Serve over HTTPS")
	p.add_argument("--cert", help="TLS certificate file (PEM)")
	p.add_argument("--key", help="TLS private key file (PEM)")
	p.add_argument(
		"--max-age",
		type=int,
		dest="maxAge",
		help="Cache-Control max-age for all files, in seconds",
	)
	p.add_argument(
		"--no-compression",
		action="store_false",
		dest="compression",
		help="Never compress responses",
	)
	p.add_argument(
		"--no-listing",
		action="store_false",
		dest="listing",
		help="Respond 403 to directories instead of listing them",
	)
	p.add_argument(
		"--no-index",
		action="store_false",
		dest="autoIndex",
		help="Don't serve index.html for directories",
	)
	p.add_argument("--cors", action="store_true", help="Add CORS headers")
	p.add_argument("--proxy", help="Upstream URL for requests with no local file")
	p.add_argument("--auth", help="Require HTTP Basic credentials, as USER:PASSWORD")
	p.add_argument(
		"-w",
		"--workers",
		type=int,
		default=0,
		help="Number of worker processes (0 or 1 serves from this process)",
	)
	p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
	return p


def main(args: list[str] | None = None) -> int:
	options = parser().parse_args(sys.argv[1:] if args is None else args)
	try:
		if options.tls and not (options.cert and options.key):
			raise ConfigError("--tls requires --cert and --key")
		if not options.tls and (options.cert or options.key):
			raise ConfigError("--cert and --key are only used with --tls")
		config = ServerConfig.Make(
			options.root,
			host=options.host,
			port=options.port,
			cert=options.cert,
			key=options.key,
			maxAge=options.maxAge,
			compression=options.compression,
			listing=options.listing,
			autoIndex=options.autoIndex,
			cors=options.cors,
			proxy=options.proxy,
			auth=options.auth,
			workers=options.workers,
			quiet=options.quiet,
		)
		# Fails early on unreadable certificates
		config.sslContext()
	except ConfigError as e:
		error(str(e), "ECONFIG")
		return 2
	run(config)
	return 0


if __name__ == "__main__":
	sys.exit(main())

# EOF
