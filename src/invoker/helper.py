import grpc
from typing import Dict, Any, List, Mapping, Optional, Tuple
import logging
import traceback
from requests_oauthlib import OAuth2Session
from oauthlib.oauth2 import BackendApplicationClient
import base64

from invoker.calls import CallResponse, CallState
from invoker.constants import LOGGER_NAME, LOG_FILE, LOG_TO_CONSOLE
from invoker.errors import InvokerError, TransportStatusError


class helper:

    def __init__(self, log_to_console=LOG_TO_CONSOLE):
        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)

        # Prevent adding duplicate handlers
        if not self.logger.handlers:
            formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

            if LOG_FILE:
                file_handler = logging.FileHandler(LOG_FILE)
                file_handler.setFormatter(formatter)
                self.logger.addHandler(file_handler)

            if log_to_console:
                console_handler = logging.StreamHandler()
                console_handler.setFormatter(formatter)
                self.logger.addHandler(console_handler)

    def log(self, function_name: str, args=None, kwargs=None, output=None, exception: Exception = None):
        args = args or []
        kwargs = kwargs or {}

        self.logger.info(f"Function: {function_name}")

        if (args):
            self.logger.debug(f"Input args: {args}")
        if (kwargs):
            self.logger.debug(f"Input kwargs: {kwargs}")

        if output is not None:
            self.logger.debug(f"Output: {output}")

        if exception is not None:
            self.logger.error(f"Exception in function '{function_name}': {str(exception)}")
            self.logger.error("".join(traceback.format_exception(type(exception), exception, exception.__traceback__)))

    def exception_to_serializable(self, error: Exception, context: Dict[str, Any] = None) -> Dict[str, Any]:

        def make_serializable(obj):
            """Recursively converts objects to JSON-friendly formats"""
            if obj is None or isinstance(obj, (str, int, float, bool)):
                return obj
            if isinstance(obj, (list, tuple, set)):
                return [make_serializable(x) for x in obj]
            if isinstance(obj, dict):
                return {str(k): make_serializable(v) for k, v in obj.items()}
            if isinstance(obj, (bytes, bytearray)):
                return obj.decode('utf-8', errors='replace')
            return str(obj)

        result = {
            "success": False,
            "error": {
                "type": error.__class__.__name__,
                "message": str(error),
                "details": {}
            }
        }

        if context:
            result["context"] = make_serializable(context)

        if isinstance(error, grpc.RpcError) and callable(getattr(error, 'code', None)):
            error = TransportStatusError.from_rpc_error(error)

        if isinstance(error, TransportStatusError):
            result["error"].update({
                "subtype": "grpc_error",
                "code_name": error.code_name,
                "code_value": error.code,
                "details": error.details,
            })
        elif isinstance(error, InvokerError):
            # Structured attributes set by the invoker error classes
            for attr, val in vars(error).items():
                if not attr.startswith('_'):
                    result["error"]["details"][attr] = make_serializable(val)

        return make_serializable(result)

    def error_response(self, error: Exception, state: Optional[CallState] = None) -> CallResponse:
        """Map any failure to a terminal CallResponse."""
        if isinstance(error, grpc.RpcError) and callable(getattr(error, 'code', None)):
            error = TransportStatusError.from_rpc_error(error)

        if isinstance(error, TransportStatusError):
            return CallResponse.failure(str(error), status_code=error.code, status_message=error.code_name)

        status_message = error.__class__.__name__
        if state is not None:
            status_message = f"{status_message} while {state.value}"
        return CallResponse.failure(str(error), status_message=status_message)

    def get_oauth2_token(self, client_id, client_secret, token_url, scope=None):
        client = BackendApplicationClient(client_id=client_id)
        oauth = OAuth2Session(client=client, scope=scope)
        token = oauth.fetch_token(token_url=token_url,
                                  client_id=client_id,
                                  client_secret=client_secret)
        return token

    def convert_auth(self, data) -> Optional[Tuple[str, str]]:
        """Turn auth settings into a single metadata header, or None."""
        if not isinstance(data, dict) or not data.get('auth_type'):
            return None

        auth_type = data['auth_type']

        if auth_type == 'api_key':
            return (data['key_name'].lower(), data['key_value'])
        elif auth_type == 'bearer_token':
            return ('authorization', f'Bearer {data["token"]}')
        elif auth_type == 'basic_auth':
            username = data.get('username') or ''
            password = data.get('password') or ''
            user_pass_string = f"{username}:{password}"
            auth_str = base64.b64encode(user_pass_string.encode('utf-8')).decode('utf-8')
            return ('authorization', f'Basic {auth_str}')
        elif auth_type == 'oauth2':
            if not all(key in data for key in ["client_id", "client_secret", "token_url"]):
                self.logger.warning("oauth2 auth requires client_id, client_secret and token_url")
                return None
            scope = data.get('scope')
            if scope is not None and not isinstance(scope, list):
                scope = [scope]

            token = self.get_oauth2_token(data['client_id'], data['client_secret'], data['token_url'], scope)
            if token and "access_token" in token:
                return ("authorization", f"Bearer {token['access_token']}")
            return None

        self.logger.warning(f"Unsupported auth type '{auth_type}'")
        return None

    def build_metadata(self, metadata: Optional[Mapping[str, str]] = None, auth_data=None) -> List[Tuple[str, str]]:
        """Convert a metadata mapping (plus optional auth) into gRPC metadata tuples.

        Keys are lower-cased. Entries that are not ASCII-safe are dropped with
        a warning, the same way an invalid header would be refused by the
        transport.
        """
        converted_meta_data = []

        auth_header = self.convert_auth(auth_data)
        if auth_header:
            converted_meta_data.append(auth_header)

        for key, value in (metadata or {}).items():
            if not key or value is None:
                continue
            key = str(key).strip().lower()
            value = str(value)
            if not self._is_ascii_header(key) or not value.isascii() or not value.isprintable():
                self.logger.warning(f"Dropping metadata entry '{key}': not ASCII-safe")
                continue
            converted_meta_data.append((key, value))

        return converted_meta_data

    @staticmethod
    def _is_ascii_header(key: str) -> bool:
        allowed = set("abcdefghijklmnopqrstuvwxyz0123456789-_.")
        return key.isascii() and all(c in allowed for c in key) and not key.startswith("grpc-")
