import base64
import io
import json

import qrcode


def qr_payload_document(credential):
    """JSON text embedded in the QR image shown to the voter."""
    return json.dumps({
        'userId': credential.voter_id,
        'redeemCode': credential.redeem_code,
        'sessionId': credential.id,
    }, separators=(',', ':'))


#  qr generation from the payload, browser decodes the data uri
def render_qr_data_uri(text):
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=1)
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color='black', back_color='white')
    buf = io.BytesIO()
    img.save(buf, format='PNG')
    b64 = base64.b64encode(buf.getvalue()).decode('utf-8')
    return f'data:image/png;base64,{b64}'
