import threading

from outbound.control_panel.api import EnhanceAPI

_client = None
_client_lock = threading.Lock()


def get_enhance_client():
    '''
    Returns a singleton instance of the EnhanceAPI class
    '''
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                from flask import current_app
                cfg = current_app.config
                _client = EnhanceAPI(
                    cfg.get("ENHANCE_BASE_URL"),
                    cfg.get("ENHANCE_API_KEY"),
                    cfg.get("ENHANCE_ORG_ID"),
                    timeout=cfg.get("ENHANCE_TIMEOUT", 30),
                )
    return _client
