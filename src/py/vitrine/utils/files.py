from pathlib import Path

DEFAULT_CONTENT_TYPE: str = "application/octet-stream"

# A static mapping, so that served types don't depend on the host's
# `mimetypes` database.
MIME_TYPES: dict[str, str] = {
	# Text and code
	".html": "text/html",
	".htm": "text/html",
	".css": "text/css",
	".js": "text/javascript",
	".mjs": "text/javascript",
	".jsx": "text/javascript",
	".json": "application/json",
	".jsonld": "application/ld+json",
	".map": "application/json",
	".txt": "text/plain",
	".csv": "text/csv",
	".xml": "text/xml",
	".md": "text/markdown",
	".webmanifest": "application/manifest+json",
	# Images
	".png": "image/png",
	".jpg": "image/jpeg",
	".jpeg": "image/jpeg",
	".gif": "image/gif",
	".svg": "image/svg+xml",
	".ico": "image/x-icon",
	".webp": "image/webp",
	".avif": "image/avif",
	".bmp": "image/bmp",
	".tif": "image/tiff",
	".tiff": "image/tiff",
	# Fonts
	".woff": "font/woff",
	".woff2": "font/woff2",
	".ttf": "font/ttf",
	".otf": "font/otf",
	".eot": "application/vnd.ms-fontobject",
	# Audio
	".mp3": "audio/mpeg",
	".wav": "audio/wav",
	".ogg": "audio/ogg",
	".m4a": "audio/mp4",
	".aac": "audio/aac",
	".flac": "audio/flac",
	".weba": "audio/webm",
	".mid": "audio/midi",
	".midi": "audio/midi",
	# Video
	".mp4": "video/mp4",
	".webm": "video/webm",
	".ogv": "video/ogg",
	".mov": "video/quicktime",
	".avi": "video/x-msvideo",
	".wmv": "video/x-ms-wmv",
	".flv": "video/x-flv",
	".m3u8": "application/vnd.apple.mpegurl",
	# NOTE: `.ts` is served as an MPEG transport stream, not TypeScript
	".ts": "video/mp2t",
	# Documents
	".pdf": "application/pdf",
	".doc": "application/msword",
	".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
	".xls": "application/vnd.ms-excel",
	".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
	".ppt": "application/vnd.ms-powerpoint",
	".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
	".rtf": "application/rtf",
	# Binaries and archives
	".wasm": "application/wasm",
	".zip": "application/zip",
	".rar": "application/x-rar-compressed",
	".tar": "application/x-tar",
	".gz": "application/gzip",
	".7z": "application/x-7z-compressed",
	".bin": "application/octet-stream",
	".exe": "application/octet-stream",
	".dmg": "application/octet-stream",
	".iso": "application/octet-stream",
	".img": "application/octet-stream",
}

# Non `text/*` types that are text or markup all the same.
TEXTUAL_TYPES: frozenset[str] = frozenset(
	(
		"application/json",
		"application/ld+json",
		"application/manifest+json",
		"application/javascript",
		"application/xml",
		"application/rtf",
		"image/svg+xml",
	)
)


def contentType(path: Path | str) -> str:
	"""Returns the content type for the given path, based on its extension."""
	suffix = Path(path).suffix.lower()
	return MIME_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)


def mediaType(contentType: str) -> str:
	"""Strips the parameters (like `charset`) from a content type."""
	return contentType.split(";", 1)[0].strip().lower()


def isTextual(contentType: str) -> bool:
	"""Tells if the content type denotes text or markup."""
	t = mediaType(contentType)
	return t.startswith("text/") or t in TEXTUAL_TYPES


# EOF
