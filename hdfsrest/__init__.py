"""WebHDFS client for writing, deleting and listing files with typed error classification

Writes follow the two step CREATE protocol: the NameNode answers with a redirect to a DataNode and
only the second request carries the file contents. For details on the WebHDFS endpoints, see the
Hadoop documentation:

- https://hadoop.apache.org/docs/current/hadoop-project-dist/hadoop-hdfs/WebHDFS.html
- https://hadoop.apache.org/docs/current/hadoop-project-dist/hadoop-hdfs/WebHDFS.html#Error_Responses
"""  # noqa: E501
import enum
import getpass
import logging
import os
import re
from typing import Any
from typing import Dict
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Type
from typing import Union
from typing import cast
from urllib.parse import quote as url_quote
from urllib.parse import urlencode
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

import requests.api
import requests.exceptions
import simplejson

DEFAULT_PORT = 9870
DEFAULT_URL = "http://localhost:{:d}".format(DEFAULT_PORT)
DEFAULT_TIMEOUT = 20.0
WEBHDFS_PATH = "/webhdfs/v1"

__version__ = "0.1.0"
_logger = logging.getLogger(__name__)

_ParamValue = Union[str, int, bool]


class HdfsException(Exception):
    """Base class for all errors while communicating with WebHDFS server

    :param message: Exception message
    :param path: HDFS path the failed operation was acting on, if known
    :param op: WebHDFS operation name, if known
    """

    #: Whether the same request may succeed if the caller tries again later
    retriable = False

    def __init__(
        self, message: str, path: Optional[str] = None, op: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.op = op


class HdfsInvalidPathError(HdfsException, ValueError):
    """The path is empty, not absolute, or tries to escape with ``..``"""


class HdfsConnectionError(HdfsException):
    """The client was not able to reach the server, or lost it mid-request"""


class HdfsTimeoutError(HdfsConnectionError):
    """The server did not answer within the timeout"""


class HdfsRedirectMissingError(HdfsException):
    """The NameNode answered CREATE with a redirect status but no ``Location`` header"""

    def __init__(
        self,
        message: str,
        status_code: int,
        path: Optional[str] = None,
        op: Optional[str] = None,
    ) -> None:
        super().__init__(message, path, op)
        self.status_code = status_code


class HdfsResponseDecodeError(HdfsException):
    """The response could not be interpreted.

    :param body: The raw response text, kept for diagnostics
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        body: str,
        path: Optional[str] = None,
        op: Optional[str] = None,
    ) -> None:
        super().__init__(message, path, op)
        self.status_code = status_code
        self.body = body


class HdfsUnexpectedRedirectError(HdfsResponseDecodeError):
    """Got a 3xx outside of the CREATE handshake"""


class HdfsRemoteException(HdfsException):
    """The server answered with an error status, normally with a ``RemoteException`` payload.

    :param message: Exception message
    :param exception: Name of the exception, or None when the body was not a WebHDFS payload
    :param status_code: HTTP status code
    :type status_code: int
    :param kwargs: any extra attributes in case Hadoop adds more stuff, e.g. ``javaClassName``
    """

    def __init__(
        self,
        message: str,
        exception: Optional[str],
        status_code: int,
        path: Optional[str] = None,
        op: Optional[str] = None,
        **kwargs: object
    ) -> None:
        super().__init__(message, path, op)
        self.exception = exception
        self.status_code = status_code
        self.__dict__.update(kwargs)


class HdfsRemoteClientError(HdfsRemoteException):
    """4xx with a ``RemoteException`` name this module has no dedicated class for"""


class HdfsRemoteFileNotFound(HdfsRemoteClientError):
    pass


class HdfsRemotePermissionDenied(HdfsRemoteClientError):
    pass


class HdfsRemoteBadRequest(HdfsRemoteClientError):
    pass


class HdfsRemoteServerError(HdfsRemoteException):
    retriable = True


_CLIENT_ERROR_CLASSES: Dict[str, Type[HdfsRemoteClientError]] = {
    "FileNotFoundException": HdfsRemoteFileNotFound,
    "AccessControlException": HdfsRemotePermissionDenied,
    "SecurityException": HdfsRemotePermissionDenied,
    "IllegalArgumentException": HdfsRemoteBadRequest,
    "HadoopIllegalArgumentException": HdfsRemoteBadRequest,
    "InvalidPathException": HdfsRemoteBadRequest,
    "UnsupportedOperationException": HdfsRemoteBadRequest,
}

# Keys of a RemoteException payload that must not clobber constructor arguments
_RESERVED_REMOTE_KEYS = frozenset(("message", "exception", "status_code", "path", "op"))


class Operation(enum.Enum):
    """WebHDFS operations, each with its ``op=`` token and HTTP method.

    ``OPEN`` is reserved for read support and has no client method yet.
    """

    CREATE = ("CREATE", "PUT")
    DELETE = ("DELETE", "DELETE")
    LISTSTATUS = ("LISTSTATUS", "GET")
    OPEN = ("OPEN", "GET")

    def __init__(self, token: str, method: str) -> None:
        self.token = token
        self.method = method


def _normalize_path(path: str) -> str:
    if any(part == ".." for part in path.split("/")):
        raise HdfsInvalidPathError(
            "Path may not contain '..', was given {!r}".format(path), path=path
        )
    path = re.sub(r"/{2,}", "/", path)
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def check_path(path: str) -> str:
    """Validate an absolute HDFS path and return it with doubled slashes collapsed"""
    if not path or not path.startswith("/"):
        raise HdfsInvalidPathError(
            "Path must be absolute, was given {!r}".format(path), path=path
        )
    return _normalize_path(path)


def resolve_path(root: str, relative: str) -> str:
    """Join ``relative`` under ``root``, with exactly one slash between them.

    The result always starts with a single ``/`` and never contains ``//``. A trailing slash is
    dropped.

    :raises HdfsInvalidPathError: ``root`` or ``relative`` is empty, or either contains a ``..``
        component
    """
    if not root or not root.strip():
        raise HdfsInvalidPathError("Root must not be empty")
    if not relative or not relative.strip("/").strip():
        raise HdfsInvalidPathError(
            "Relative path must not be empty, was given {!r}".format(relative),
            path=relative,
        )
    return _normalize_path("/" + root + "/" + relative)


def _format_param(value: _ParamValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_url(
    base: str,
    path: str,
    op: Operation,
    user_name: str,
    extra_params: Optional[Mapping[str, _ParamValue]] = None,
) -> str:
    """Return the full request URL for ``op`` on ``path``.

    Query parameters are ordered ``op``, ``user.name``, then ``extra_params`` in iteration order.
    The path is percent-encoded as UTF-8 with ``/`` left as is.
    """
    extra_params = extra_params or {}
    for k in ("op", "user.name"):
        if k in extra_params:
            raise ValueError("Cannot override query parameter {}".format(k))
    params = [("op", op.token), ("user.name", user_name)]
    params.extend((k, _format_param(v)) for k, v in extra_params.items())
    return "{}{}?{}".format(
        base.rstrip("/"),
        url_quote(path.encode("utf-8")),
        urlencode(params, quote_via=url_quote),
    )


def _remote_exception(body: str) -> Optional[Dict[str, Any]]:
    """Return the ``RemoteException`` object of an error body, or None if there is none"""
    try:
        js = simplejson.loads(body)
    except simplejson.JSONDecodeError:
        return None
    remote = js.get("RemoteException") if isinstance(js, dict) else None
    if not isinstance(remote, dict) or not isinstance(remote.get("exception"), str):
        return None
    return remote


def classify_response(
    status: int, body: str, path: Optional[str] = None, op: Optional[str] = None
) -> str:
    """Return ``body`` unchanged for a 2xx status, otherwise raise the matching exception.

    Only the ``exception`` field of a ``RemoteException`` payload drives the choice of class.
    Other fields such as ``javaClassName`` are kept as attributes on the raised exception.
    A 5xx is always a :py:class:`HdfsRemoteServerError`, even when a proxy answered with a body
    that is not WebHDFS JSON; the raw body is then the message.

    :raises HdfsUnexpectedRedirectError: 3xx status
    :raises HdfsRemoteServerError: 5xx status
    :raises HdfsResponseDecodeError: 4xx body is not a ``RemoteException`` JSON payload
    :raises HdfsRemoteClientError: 4xx status, or one of its subclasses for known exceptions
    """
    if 200 <= status < 300:
        return body
    if 300 <= status < 400:
        raise HdfsUnexpectedRedirectError(
            "Unexpected redirect (HTTP {})".format(status), status, body, path, op
        )
    if status < 200:
        raise HdfsResponseDecodeError(
            "Unexpected HTTP status {}".format(status), status, body, path, op
        )
    remote = _remote_exception(body)
    if remote is None:
        if status >= 500:
            raise HdfsRemoteServerError(body, None, status, path, op)
        raise HdfsResponseDecodeError(
            "Expected a RemoteException JSON payload. Is WebHDFS enabled? "
            "Got HTTP {} {!r}".format(status, body),
            status,
            body,
            path,
            op,
        )
    exception_name = remote["exception"]
    message = str(remote.get("message", ""))
    extra = {k: v for k, v in remote.items() if k not in _RESERVED_REMOTE_KEYS}
    cls: Type[HdfsRemoteException]
    if status >= 500:
        cls = HdfsRemoteServerError
    else:
        cls = _CLIENT_ERROR_CLASSES.get(exception_name, HdfsRemoteClientError)
    raise cls(message, exception_name, status, path, op, **extra)


def _parse_url(url: str) -> str:
    url = url.strip().rstrip("/")
    if not url:
        raise ValueError("No url given")
    if "://" not in url:
        url = "http://" + url
    parts = urlsplit(url)
    if not parts.hostname:
        raise ValueError("Invalid url: {}".format(url))
    if parts.port is None:
        parts = parts._replace(
            netloc="{}:{:d}".format(parts.netloc, DEFAULT_PORT)
        )
    url = urlunsplit(parts)
    if url.endswith(WEBHDFS_PATH):
        url = url[: -len(WEBHDFS_PATH)]
    return url


class HdfsConfig(NamedTuple):
    """Connection settings shared by every request of a :py:class:`HdfsClient`.

    Build instances with :py:meth:`create` or :py:meth:`from_env`, which validate and fill in
    defaults.

    :param url: NameNode HTTP address, e.g. ``http://namenode:9870``
    :param user_name: What Hadoop user to run as, sent as ``user.name``
    :param root: Directory that :py:meth:`HdfsClient.resolve` joins relative paths under
    :param timeout: Seconds to wait on each HTTP request
    """

    url: str
    user_name: str
    root: str = "/"
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def create(
        cls,
        url: str = DEFAULT_URL,
        user_name: Optional[str] = None,
        root: str = "/",
        timeout: Union[float, str] = DEFAULT_TIMEOUT,
    ) -> "HdfsConfig":
        """Validate settings and return a config.

        ``url`` may omit the scheme (``http``) and the port (9870). ``user_name`` defaults to the
        ``HADOOP_USER_NAME`` environment variable if present, otherwise ``getpass.getuser()``.
        """
        try:
            timeout = float(timeout)
        except ValueError:
            raise ValueError("Invalid timeout: {!r}".format(timeout)) from None
        if timeout <= 0:
            raise ValueError("Invalid timeout: {}".format(timeout))
        if not root.startswith("/"):
            raise ValueError("Root must be absolute, was given {!r}".format(root))
        return cls(
            url=_parse_url(url),
            user_name=user_name
            or os.environ.get("HADOOP_USER_NAME")
            or getpass.getuser(),
            root=_normalize_path(root),
            timeout=timeout,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HdfsConfig":
        """Read ``WEBHDFS_URL``, ``HADOOP_USER_NAME``, ``WEBHDFS_ROOT`` and ``WEBHDFS_TIMEOUT``"""
        env = os.environ if environ is None else environ
        return cls.create(
            url=env.get("WEBHDFS_URL", DEFAULT_URL),
            user_name=env.get("HADOOP_USER_NAME") or getpass.getuser(),
            root=env.get("WEBHDFS_ROOT", "/"),
            timeout=env.get("WEBHDFS_TIMEOUT", DEFAULT_TIMEOUT),
        )

    @property
    def base_url(self) -> str:
        return self.url + WEBHDFS_PATH


class HdfsClient(object):
    """HDFS client backed by WebHDFS.

    Every operation is a blocking call that returns the raw response body on success and raises a
    subclass of :py:class:`HdfsException` otherwise. Nothing is retried. The client keeps no state
    between calls apart from its configuration, so it can be shared between threads.

    :param config: Connection settings. Defaults to :py:meth:`HdfsConfig.create` with no arguments.
    :param send_payload_on_redirect: Whether the first CREATE request to the NameNode also carries
        the file contents. The NameNode ignores them and redirects, but a server that completes the
        write without a redirect will then still have received the data. Set to ``False`` to save
        the extra upload.
    :type send_payload_on_redirect: bool
    :param requests_session: A ``requests.Session`` object for advanced usage. If absent, this
        class will use the default requests behavior of making a new session per HTTP request.
        Caller is responsible for closing session.
    :param requests_kwargs: Additional ``**kwargs`` to pass to requests
    """

    def __init__(
        self,
        config: Optional[HdfsConfig] = None,
        send_payload_on_redirect: bool = True,
        requests_session: Optional[requests.Session] = None,
        requests_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.config = config or HdfsConfig.create()
        self.send_payload_on_redirect = send_payload_on_redirect
        self._requests_session = requests_session or cast(
            requests.Session, requests.api
        )
        self._requests_kwargs = requests_kwargs or {}
        for k in ("method", "url", "data", "timeout", "allow_redirects", "params"):
            if k in self._requests_kwargs:
                raise ValueError("Cannot override requests argument {}".format(k))

    def resolve(self, relative: str) -> str:
        """Return the absolute path of ``relative`` under the configured root"""
        return resolve_path(self.config.root, relative)

    def _url(
        self,
        path: str,
        op: Operation,
        extra_params: Optional[Mapping[str, _ParamValue]] = None,
    ) -> str:
        return build_url(
            self.config.base_url, path, op, self.config.user_name, extra_params
        )

    def _send(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        path: str,
        op: Operation,
        timeout: Optional[float],
    ) -> requests.Response:
        timeout = self.config.timeout if timeout is None else timeout
        try:
            response = self._requests_session.request(
                method,
                url,
                data=data,
                timeout=timeout,
                allow_redirects=False,
                **self._requests_kwargs,
            )
        except requests.exceptions.Timeout as e:
            _logger.warning("%s %s timed out", method, url, exc_info=True)
            raise HdfsTimeoutError(
                "Timed out after {}s on {} {}".format(timeout, method, url),
                path,
                op.token,
            ) from e
        except (
            requests.exceptions.ConnectionError,
            requests.exceptions.ChunkedEncodingError,
        ) as e:
            _logger.warning("Failed to reach %s", url, exc_info=True)
            raise HdfsConnectionError(
                "Failed to reach {}: {}".format(url, e), path, op.token
            ) from e
        _logger.debug("%s %s -> %d", method, url, response.status_code)
        return response

    def _execute(
        self, path: str, op: Operation, url: str, timeout: Optional[float]
    ) -> str:
        """Make a single WebHDFS request and classify its response"""
        response = self._send(op.method, url, None, path, op, timeout)
        return classify_response(response.status_code, response.text, path, op.token)

    def _create(
        self, path: str, url: str, data: bytes, timeout: Optional[float]
    ) -> str:
        """Run the two step CREATE: NameNode redirect, then upload to the DataNode.

        If the NameNode answers without a redirect, its response is the result. Otherwise the
        result is the DataNode response, whatever the NameNode's body said. A failure on the
        second step leaves it unknown whether any bytes landed; nothing is rolled back.
        """
        op = Operation.CREATE
        first_data = data if self.send_payload_on_redirect else b""
        metadata_response = self._send(op.method, url, first_data, path, op, timeout)
        status = metadata_response.status_code
        if not 300 <= status < 400:
            _logger.debug("%s %s completed without redirect", op.token, path)
            return classify_response(status, metadata_response.text, path, op.token)

        location = metadata_response.headers.get("location")
        if not location:
            raise HdfsRedirectMissingError(
                "Got HTTP {} without a Location header".format(status),
                status,
                path,
                op.token,
            )
        _logger.debug("%s %s redirected to %s", op.token, path, location)
        data_response = self._send(op.method, location, data, path, op, timeout)
        return classify_response(
            data_response.status_code, data_response.text, path, op.token
        )

    def write(
        self,
        path: str,
        content: Union[bytes, str],
        timeout: Optional[float] = None,
    ) -> str:
        """Create or overwrite the file at ``path``.

        :param content: ``bytes``, or ``str`` which gets encoded as UTF-8
        :param timeout: Seconds to wait on each of the two requests. Defaults to the config value.
        :returns: the DataNode's response body, usually empty
        """
        path = check_path(path)
        _logger.info(
            "%s %s user.name=%s", Operation.CREATE.token, path, self.config.user_name
        )
        data = content.encode("utf-8") if isinstance(content, str) else content
        url = self._url(path, Operation.CREATE, {"overwrite": True})
        return self._create(path, url, data, timeout)

    def delete(self, path: str, timeout: Optional[float] = None) -> str:
        """Delete a file or an empty directory.

        :returns: JSON text ``{"boolean": true}``, or ``{"boolean": false}`` when nothing was
            deleted (e.g. the path did not exist)
        """
        path = check_path(path)
        _logger.info(
            "%s %s user.name=%s", Operation.DELETE.token, path, self.config.user_name
        )
        url = self._url(path, Operation.DELETE)
        return self._execute(path, Operation.DELETE, url, timeout)

    def list(self, path: str, timeout: Optional[float] = None) -> str:
        """List the statuses of the files/directories in the given path.

        :returns: JSON text of the form ``{"FileStatuses": {"FileStatus": [...]}}``, unparsed
        """
        path = check_path(path)
        _logger.info(
            "%s %s user.name=%s",
            Operation.LISTSTATUS.token,
            path,
            self.config.user_name,
        )
        url = self._url(path, Operation.LISTSTATUS)
        return self._execute(path, Operation.LISTSTATUS, url, timeout)
