import json
from datetime import timedelta

import pytest

from credentials import classify_scan, issue_credential, resolve_scanned_payload
from errors import FormatUnrecognized, NotFound
from models import db, utcnow
from qr import qr_payload_document

pytestmark = pytest.mark.usefixtures('app')


@pytest.fixture
def credential(voter):
    return issue_credential(voter.id)


def test_classify_json_document():
    scan = classify_scan('{"userId": 7, "redeemCode": "ab12cd34", "sessionId": 3}')
    assert scan.kind == 'json'
    assert scan.owner_id == 7
    assert scan.redeem_code == 'AB12CD34'


def test_classify_json_accepts_voter_id_field():
    scan = classify_scan('{"voterId": "7", "redeemCode": "AB12CD34"}')
    assert scan.kind == 'json'
    assert scan.owner_id == '7'


def test_classify_legacy_payload():
    scan = classify_scan('ITERA1700000000000ABCDEF12')
    assert scan.kind == 'legacy'
    assert scan.qr_payload == 'ITERA1700000000000ABCDEF12'


def test_classify_redeem_code_is_case_insensitive():
    assert classify_scan(' AB12CD34 ') == ('redeem', None, 'AB12CD34', None)
    assert classify_scan('ab12cd34').redeem_code == 'AB12CD34'


def test_short_prefixed_string_falls_through_to_redeem_code():
    assert classify_scan('ITERA123').kind == 'redeem'


def test_json_without_required_fields_falls_through():
    with pytest.raises(FormatUnrecognized):
        classify_scan('{"userId": 7}')


@pytest.mark.parametrize('raw', [
    'not-a-valid-code',
    '',
    'AB12CD3',
    'AB12CD345',
    'ITERA',
    '[1, 2, 3]',
    None,
    12345678,
    {'userId': 7, 'redeemCode': 'AB12CD34'},
])
def test_unrecognised_formats(raw):
    with pytest.raises(FormatUnrecognized):
        classify_scan(raw)


def test_format_unrecognized_is_distinct_kind_of_not_found(app):
    with pytest.raises(NotFound) as excinfo:
        resolve_scanned_payload('not-a-valid-code')
    assert excinfo.value.code == 'format_unrecognized'


def test_issued_credential_resolves_through_every_format(credential):
    assert resolve_scanned_payload(qr_payload_document(credential)).id == credential.id
    assert resolve_scanned_payload(credential.qr_payload).id == credential.id
    assert resolve_scanned_payload(credential.redeem_code).id == credential.id
    assert resolve_scanned_payload(credential.redeem_code.lower()).id == credential.id


def test_json_owner_mismatch_is_not_found(credential):
    raw = json.dumps({'userId': credential.voter_id + 1000, 'redeemCode': credential.redeem_code})
    with pytest.raises(NotFound) as excinfo:
        resolve_scanned_payload(raw)
    assert excinfo.value.code == 'not_found'


def test_unknown_redeem_code_is_not_found(credential):
    code = 'ZZZZZZZZ' if credential.redeem_code != 'ZZZZZZZZ' else 'YYYYYYYY'
    with pytest.raises(NotFound) as excinfo:
        resolve_scanned_payload(code)
    assert excinfo.value.code == 'not_found'


def test_legacy_payload_ignores_validated_credentials(credential):
    credential.is_validated = True
    db.session.commit()

    with pytest.raises(NotFound):
        resolve_scanned_payload(credential.qr_payload)
    with pytest.raises(NotFound):
        resolve_scanned_payload(credential.redeem_code)
    # The JSON document still resolves so the validator can report it.
    assert resolve_scanned_payload(qr_payload_document(credential)).id == credential.id


def test_legacy_payload_ignores_expired_credentials(credential):
    credential.expires_at = utcnow() - timedelta(seconds=1)
    db.session.commit()

    with pytest.raises(NotFound):
        resolve_scanned_payload(credential.qr_payload)


def test_redeem_code_resolves_expired_credential_for_clearer_error(credential):
    credential.expires_at = utcnow() - timedelta(seconds=1)
    db.session.commit()

    assert resolve_scanned_payload(credential.redeem_code).id == credential.id
