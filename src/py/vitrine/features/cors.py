from ..http.model import HTTPRequest, HTTPResponse

# SEE: https://developer.mozilla.org/en-US/docs/Web/HTTP/CORS

CORS_HEADERS: dict[str, str] = {
	"Access-Control-Allow-Origin": "*",
	"Access-Control-Allow-Headers": "Range, Content-Type, Authorization, If-None-Match",
	"Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
}


def setCORSHeaders(response: HTTPResponse) -> HTTPResponse:
	"""Sets the CORS headers on the given response, so that the served
	content can be fetched from any origin."""
	response.setHeaders(dict(CORS_HEADERS))
	return response


def preflight(request: HTTPRequest) -> HTTPResponse:
	"""Answers a CORS preflight (`OPTIONS`) request."""
	return setCORSHeaders(
		request.empty(204, headers={"Access-Control-Max-Age": "86400"})
	)


# EOF
