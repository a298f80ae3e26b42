import qrcode
import qrcode.image.svg


def make_challenge_qr_svg_bytes(message: str) -> bytes:
    # mobile wallets scan the raw challenge text and sign it as-is
    img = qrcode.make(message, image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()
