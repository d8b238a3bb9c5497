from .signing import SignatureReceiver, body_digest

__all__ = ["SignatureReceiver", "body_digest"]
