from http import HTTPStatus

# Reason phrases by status code, as sent in response status lines.
HTTP_STATUS: dict[int, str] = {_.value: _.phrase for _ in HTTPStatus}

# Statuses for which a response never has a body.
HTTP_NO_BODY: frozenset[int] = frozenset(
	_ for _ in HTTP_STATUS if _ < 200 or _ in (204, 304)
)

# EOF
