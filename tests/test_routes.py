from fastapi import status

from keyhub.models import Permission
from tests.conftest import OTHER, OWNER, api_client, auth, ed25519_pair, make_token, patch_verify, rsa_pair
from tests.supabase_stub import SupabaseStub

ALL = [p.value for p in Permission]


def _slug(kid: str) -> str:
    return kid.rsplit("/", 1)[1]


def _audit_rows(action: str) -> list[dict]:
    return [row for row in SupabaseStub().rows("audit_logs") if row["action"] == action]


def _add_ed_key(client, token: str, **public_fields) -> tuple[dict, str]:
    public_b58, private_b58 = ed25519_pair()
    resp = client.post(
        "/v1/keys",
        json={
            "public_key": {"owner": OWNER, "public_key_base58": public_b58, **public_fields},
            "private_key": {"private_key_base58": private_b58},
        },
        headers=auth(token),
    )
    assert resp.status_code == status.HTTP_201_CREATED, resp.text
    return resp.json(), private_b58

# ---------------------------------------------------------------------------
# health
# ---------------------------------------------------------------------------


def test_health(api_client):
    resp = api_client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}

# ---------------------------------------------------------------------------
# POST /v1/keys
# ---------------------------------------------------------------------------


def test_add_key(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    body, private_b58 = _add_ed_key(api_client, token, label="laptop")

    public_key = body["public_key"]
    assert public_key["id"].startswith("https://keys.test/keys/")
    assert public_key["status"] == "active"
    assert public_key["label"] == "laptop"
    assert public_key["private_key"] is None
    assert private_b58 not in str(body)

    (audit,) = _audit_rows("key.create")
    assert audit["status"] == "success"
    assert audit["actor_id"] == OWNER
    assert audit["resource_id"] == public_key["id"]
    assert audit["metadata"] == {"algorithm": "ed25519", "explicit_id": False, "private_key_stored": True}


def test_add_key_anonymous_is_denied(api_client):
    public_pem, _ = rsa_pair()
    resp = api_client.post("/v1/keys", json={"public_key": {"owner": OWNER, "public_key_pem": public_pem}})
    assert resp.status_code == status.HTTP_403_FORBIDDEN
    assert resp.json()["detail"] == "permission_denied"

    (audit,) = _audit_rows("key.create")
    assert audit["status"] == "denied"
    assert audit["actor_id"] == "anonymous"


def test_add_key_for_someone_else_is_denied(api_client, patch_verify):
    token = make_token(OTHER, ALL)
    public_pem, _ = rsa_pair()
    resp = api_client.post(
        "/v1/keys",
        json={"public_key": {"owner": OWNER, "public_key_pem": public_pem}},
        headers=auth(token),
    )
    assert resp.status_code == status.HTTP_403_FORBIDDEN


def test_add_invalid_key(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    resp = api_client.post(
        "/v1/keys",
        json={"public_key": {"owner": OWNER, "public_key_pem": "not a key"}},
        headers=auth(token),
    )
    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    body = resp.json()
    assert body["detail"] == "invalid_public_key"
    assert "cause" in body


def test_add_key_without_material(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    resp = api_client.post("/v1/keys", json={"public_key": {"owner": OWNER}}, headers=auth(token))
    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert resp.json()["detail"] == "unsupported_key_type"


def test_add_duplicate_key(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    payload = {"public_key": {"owner": OWNER, "public_key_pem": rsa_pair()[0]}}
    assert api_client.post("/v1/keys", json=payload, headers=auth(token)).status_code == 201

    resp = api_client.post("/v1/keys", json=payload, headers=auth(token))
    assert resp.status_code == status.HTTP_409_CONFLICT
    assert resp.json()["detail"] == "key_already_exists"


def test_add_with_explicit_id_is_audited(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    body, _ = _add_ed_key(api_client, token, id="https://keys.test/keys/pinned")
    assert body["public_key"]["id"] == "https://keys.test/keys/pinned"
    (audit,) = _audit_rows("key.create")
    assert audit["metadata"]["explicit_id"] is True

# ---------------------------------------------------------------------------
# GET /v1/keys/{slug}
# ---------------------------------------------------------------------------


def test_get_key_anonymous_and_owner(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    body, private_b58 = _add_ed_key(api_client, token)
    slug = _slug(body["public_key"]["id"])

    anonymous = api_client.get(f"/v1/keys/{slug}")
    assert anonymous.status_code == 200
    assert anonymous.json()["private_key"] is None
    assert anonymous.json()["public_key"]["owner"] == OWNER

    mine = api_client.get(f"/v1/keys/{slug}", headers=auth(token))
    assert mine.json()["private_key"]["private_key_base58"] == private_b58
    assert mine.json()["public_key"]["private_key"] is None

    other = api_client.get(f"/v1/keys/{slug}", headers=auth(make_token(OTHER, ALL)))
    assert other.status_code == 200
    assert other.json()["private_key"] is None


def test_get_missing_key(api_client):
    resp = api_client.get("/v1/keys/does-not-exist")
    assert resp.status_code == status.HTTP_404_NOT_FOUND
    assert resp.json()["detail"] == "key_not_found"

# ---------------------------------------------------------------------------
# GET /v1/keys?owner=
# ---------------------------------------------------------------------------


def test_list_keys(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    _add_ed_key(api_client, token)
    api_client.post(
        "/v1/keys",
        json={"public_key": {"owner": OWNER, "public_key_pem": rsa_pair()[0]}},
        headers=auth(token),
    )

    anonymous = api_client.get("/v1/keys", params={"owner": OWNER})
    assert anonymous.status_code == 200
    assert len(anonymous.json()) == 2
    assert all(r["public_key"]["private_key"] is None for r in anonymous.json())

    signers = api_client.get("/v1/keys", params={"owner": OWNER, "capability": "sign"}, headers=auth(token))
    assert len(signers.json()) == 1
    assert signers.json()[0]["public_key"]["private_key"] is not None


def test_list_keys_requires_owner(api_client):
    assert api_client.get("/v1/keys").status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

# ---------------------------------------------------------------------------
# PATCH /v1/keys/{slug}
# ---------------------------------------------------------------------------


def test_update_key(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    body, _ = _add_ed_key(api_client, token, label="old")
    slug = _slug(body["public_key"]["id"])

    resp = api_client.patch(
        f"/v1/keys/{slug}",
        json={"label": "new", "owner": OTHER, "status": "disabled"},
        headers=auth(token),
    )
    assert resp.status_code == status.HTTP_204_NO_CONTENT

    stored = api_client.get(f"/v1/keys/{slug}").json()["public_key"]
    assert stored["label"] == "new"
    assert stored["owner"] == OWNER
    assert stored["status"] == "active"

    (audit,) = _audit_rows("key.update")
    assert audit["metadata"] == {"fields": ["label"]}


def test_update_key_by_stranger(api_client, patch_verify):
    body, _ = _add_ed_key(api_client, make_token(OWNER, ALL))
    slug = _slug(body["public_key"]["id"])

    resp = api_client.patch(
        f"/v1/keys/{slug}",
        json={"label": "mine now", "owner": OTHER},
        headers=auth(make_token(OTHER, ALL)),
    )
    assert resp.status_code == status.HTTP_403_FORBIDDEN
    (audit,) = _audit_rows("key.update")
    assert audit["status"] == "denied"


def test_update_missing_key(api_client, patch_verify):
    resp = api_client.patch("/v1/keys/nope", json={"label": "x"}, headers=auth(make_token(OWNER, ALL)))
    assert resp.status_code == status.HTTP_404_NOT_FOUND

# ---------------------------------------------------------------------------
# DELETE /v1/keys/{slug}
# ---------------------------------------------------------------------------


def test_revoke_key(api_client, patch_verify):
    token = make_token(OWNER, ALL)
    body, private_b58 = _add_ed_key(api_client, token)
    slug = _slug(body["public_key"]["id"])

    resp = api_client.delete(f"/v1/keys/{slug}", headers=auth(token))
    assert resp.status_code == status.HTTP_202_ACCEPTED
    assert resp.json()["status"] == "disabled"
    assert resp.json()["revoked_at"] is not None
    assert private_b58 not in resp.text

    again = api_client.delete(f"/v1/keys/{slug}", headers=auth(token))
    assert again.status_code == status.HTTP_404_NOT_FOUND

    assert api_client.get(f"/v1/keys/{slug}").json()["public_key"]["status"] == "disabled"
    assert len(_audit_rows("key.revoke")) == 1


def test_revoke_requires_authentication(api_client, patch_verify):
    body, _ = _add_ed_key(api_client, make_token(OWNER, ALL))
    slug = _slug(body["public_key"]["id"])

    resp = api_client.delete(f"/v1/keys/{slug}")
    assert resp.status_code == status.HTTP_403_FORBIDDEN
    assert api_client.get(f"/v1/keys/{slug}").json()["public_key"]["status"] == "active"

# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def test_unknown_token_is_rejected(api_client, patch_verify):
    resp = api_client.get("/v1/keys", params={"owner": OWNER}, headers=auth("kh_unknown"))
    assert resp.status_code == status.HTTP_401_UNAUTHORIZED


def test_malformed_authorization_header(api_client):
    resp = api_client.get("/v1/keys", params={"owner": OWNER}, headers={"Authorization": "Basic abc"})
    assert resp.status_code == status.HTTP_401_UNAUTHORIZED
