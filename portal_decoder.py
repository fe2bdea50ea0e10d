import json
import logging
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

# Sentinel key carrying the undecodable body
RAW_TEXT_KEY = "_raw"


def _outermost_object(text: str) -> Optional[str]:
    start = text.find('{')
    end = text.rfind('}')
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def decode_response(body: Union[str, bytes, dict, list, None]) -> Any:
    """
    Decodes a portal/panel body that may be plain JSON, JSON wrapped in a JS callback
    (`name({...});`) or arbitrary text. Never raises: undecodable text comes back as
    `{RAW_TEXT_KEY: text}`.
    """
    if body is None:
        return {RAW_TEXT_KEY: ""}
    if isinstance(body, (dict, list)):
        return body
    if isinstance(body, (bytes, bytearray)):
        body = bytes(body).decode('utf-8', errors='replace')

    text = body.lstrip('\ufeff').strip()
    if not text:
        return {RAW_TEXT_KEY: ""}

    try:
        decoded = json.loads(text)
    except ValueError:
        pass
    else:
        # bare scalars (`null`, `"x"`, `0`) carry no portal structure
        if isinstance(decoded, (dict, list)):
            return decoded
        return {RAW_TEXT_KEY: text}

    candidate = _outermost_object(text)
    if candidate is not None:
        try:
            return json.loads(candidate)
        except ValueError as e:
            logger.debug(f"Could not parse embedded JSON block: {e}")

    logger.debug(f"Response is not JSON, keeping raw text ({len(text)} chars)")
    return {RAW_TEXT_KEY: text}


def is_raw(result: Any) -> bool:
    return isinstance(result, dict) and RAW_TEXT_KEY in result


def js_payload(result: Any) -> Any:
    """Unwraps the MAG `{"js": <payload>}` envelope; other shapes pass through."""
    if isinstance(result, dict) and 'js' in result:
        return result['js']
    if is_raw(result):
        return None
    return result


def find_token(result: Any) -> Optional[str]:
    if not isinstance(result, dict):
        return None
    payload = result.get('js')
    if isinstance(payload, dict) and payload.get('token'):
        return str(payload['token'])
    if result.get('token'):
        return str(result['token'])
    return None
