from .config import ConfigError, ServerConfig  # NOQA: F401
from .dispatcher import Dispatcher, DispatchState  # NOQA: F401
from .http.model import (  # NOQA: F401
	HTTPRequest,
	HTTPResponse,
)
from .server import Server, run  # NOQA: F401
from .workers import Supervisor  # NOQA: F401

# EOF
