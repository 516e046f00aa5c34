import base64, time
from typing import Optional

from cryptography.hazmat.primitives import hashes

from akeeba_common.messages import Challenge


def current_ms() -> int:
    ''' This function returns the current time in milliseconds since the epoch '''
    return int(time.time() * 1000)

def md5_hex(text: str) -> str:
    '''
    This function hashes a text with MD5 and returns the lowercase hex digest.
        Input: text to hash (encoded as UTF-8)
        Output: 32 character hex string
    '''
    h = hashes.Hash(hashes.MD5())
    h.update(text.encode())
    return h.finalize().hex()

def generate_challenge(secret: str, now_ms: Optional[int] = None) -> Challenge:
    '''
    The function builds the authentication challenge attached to every request.
    The server recomputes md5(salt + secret) and compares, so MD5 is mandatory here.
    Input:
        - secret: the shared secret key of the site
        - now_ms: timestamp in milliseconds used as salt (default: current time)
    Output: Challenge(salt, digest)
    '''
    salt = current_ms() if now_ms is None else int(now_ms)
    return Challenge(salt=salt, digest=md5_hex(str(salt) + secret))

def b64d(s: str) -> bytes:
    ''' This function decodes a Base64 string to bytes '''
    return base64.b64decode(s.encode())
