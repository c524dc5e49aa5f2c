from urllib.parse import urlencode

import qrcode
import qrcode.image.svg


def login_uri(challenge: str, origin: str, tag: str = "login") -> str:
    """Deep link a mobile signer scans to sign the challenge for `origin`."""
    params = {"k1": challenge, "tag": tag, "origin": origin.rstrip("/")}
    return "nostr-login:?" + urlencode(params, safe=":/")


def make_qr_svg_bytes(payload: str) -> bytes:
    img = qrcode.make(payload, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()
