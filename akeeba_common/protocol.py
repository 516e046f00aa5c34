import json
from typing import Any, Mapping, Optional, Union
from urllib.parse import quote

from akeeba_common.crypto import generate_challenge
from akeeba_common.messages import DecodeResult, RequestEnvelope

ENC = "utf-8"      # encoding of the response text
PADDING = 3        # characters wrapped around every JSON response
SUCCESS = 200      # logical status of a successful call
ROUTE = "index.php?option=com_akeeba&view=json&format=component&json="

_SEPARATORS = (",", ":")   # compact, like the server's own encoder


def encode_request(method: str, secret: str, data: Optional[Mapping[str, Any]] = None,
                   now_ms: Optional[int] = None) -> RequestEnvelope:
    '''
    The function builds the request envelope for a remote method.
    Inputs:
        - method: name of the remote method (ie: startBackup)
        - secret: shared secret used to sign the challenge
        - data: parameters of the call, or None
        - now_ms: optional timestamp in ms for the challenge salt
    Output: RequestEnvelope whose body is the serialized inner call
    '''
    body = {
        "method": method,
        "challenge": str(generate_challenge(secret, now_ms)),
        "data": dict(data) if data is not None else None,
    }
    return RequestEnvelope(body=json.dumps(body, separators=_SEPARATORS))

def build_url(base_url: str, envelope: RequestEnvelope) -> str:
    '''
    The function returns the GET url for an envelope on the given site.
    The outer JSON is percent-encoded into the "json" query parameter.
    '''
    if not base_url.endswith("/"):
        base_url += "/"
    return base_url + ROUTE + quote(envelope.to_json(), safe="")

def decode_response(raw: Union[str, bytes, None]) -> DecodeResult:
    '''
    The function unwraps a response of the JSON API. It never raises: every failure
    is reported as a FAILED result with a reason.
    Input:
        - raw: the response body, padded by PADDING characters on each side
    Output:
        - DecodeResult OK (payload), EMPTY (falsy payload) or FAILED (reason)
    '''
    if raw is None:
        return DecodeResult.failed("no response body")
    if isinstance(raw, bytes):
        try:
            raw = raw.decode(ENC)
        except UnicodeDecodeError as e:
            return DecodeResult.failed(f"response is not {ENC}: {e}")
    if len(raw) < 2 * PADDING:
        return DecodeResult.failed("response shorter than its padding")

    try:
        outer = json.loads(raw[PADDING:-PADDING])
    except (ValueError, RecursionError) as e:
        return DecodeResult.failed(f"invalid JSON envelope: {e}")

    body = outer.get("body") if isinstance(outer, dict) else None
    if not isinstance(body, dict):
        return DecodeResult.failed("envelope has no body")
    status = body.get("status")
    if status not in (SUCCESS, str(SUCCESS)):
        return DecodeResult.failed(f"status {status}: {body.get('data')}")

    data = body.get("data")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except (ValueError, RecursionError) as e:
            return DecodeResult.failed(f"invalid JSON data: {e}")
    return DecodeResult.ok(data) if data else DecodeResult.empty(data)
