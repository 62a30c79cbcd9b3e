import pytest


PAYLOAD = b"0123456789"


def initiate(client, data=PAYLOAD, **form):
    response = client.post(
        "/upload/initiate",
        files={"file": ("payload.bin", data, "application/octet-stream")},
        data={k: str(v) for k, v in form.items()},
    )
    return response


def presign(client, session_id, part_number):
    response = client.post(
        "/upload/presigned-url",
        data={"session_id": session_id, "part_number": str(part_number)},
    )
    assert response.status_code == 200
    return response.json()


def upload(client, session_id, part_number, token):
    return client.post(
        "/upload/part",
        data={"session_id": session_id, "part_number": str(part_number), "token": token},
    )


def test_initiate_upload(test_client):
    response = initiate(test_client)

    assert response.status_code == 200
    body = response.json()
    assert body["payload_size"] == 10
    assert body["part_size"] == 4
    assert body["part_count"] == 3
    assert [p["length"] for p in body["parts"]] == [4, 4, 2]
    assert all(p["status"] == "pending" for p in body["parts"])


def test_initiate_with_part_count(test_client):
    body = initiate(test_client, part_count=2).json()

    assert body["part_size"] == 5
    assert body["part_count"] == 2


def test_initiate_rejects_policy_exceeding_max_parts(test_client):
    response = initiate(test_client, part_size=4, max_parts=2)

    assert response.status_code == 400
    assert "max_parts" in response.json()["detail"]


@pytest.mark.parametrize(
    "form,message",
    [
        ({"part_size": 0}, "fixed_part_size"),
        ({"part_size": -4}, "fixed_part_size"),
        ({"max_parts": 0}, "max_parts"),
        ({"part_count": 0}, "part_count"),
    ],
)
def test_initiate_rejects_zero_policy_values(test_client, form, message):
    response = initiate(test_client, data=b"x" * 30, **form)

    assert response.status_code == 400
    assert message in response.json()["detail"]
    assert test_client.get("/upload/sessions/active").json()["sessions"] == []


def test_manual_part_upload_flow(test_client):
    session_id = initiate(test_client).json()["session_id"]

    for number in (1, 2, 3):
        issued = presign(test_client, session_id, number)
        assert f"partNumber={number}" in issued["url"]
        # compact token for odd parts, full URL for even ones
        token = issued["token"] if number % 2 else issued["url"]
        response = upload(test_client, session_id, number, token)
        assert response.status_code == 200
        assert response.json()["status"] == "uploaded"
        assert response.json()["received_bytes"] == (2 if number == 3 else 4)

    response = test_client.post("/upload/complete", json={"session_id": session_id})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["etag"].endswith("-3")
    assert body["part_count"] == 3


def test_forged_token_is_forbidden(test_client):
    session_id = initiate(test_client).json()["session_id"]
    token = presign(test_client, session_id, 1)["token"]
    forged = token.rsplit(".", 1)[0] + "." + "0" * 64

    response = upload(test_client, session_id, 1, forged)

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "signature_mismatch"
    session = test_client.get(f"/upload/session/{session_id}").json()
    assert session["parts"]["1"]["status"] == "failed"
    assert session["parts"]["1"]["attempt"] == 0


@pytest.mark.parametrize(
    "token",
    [
        "1.99999999999999999999.99999999999999999999.abc",
        "https://bucket.s3.amazonaws.com/key?partNumber=1&X-Amz-Date=20260101T120000Z"
        "&X-Amz-Expires=999999999999999999999&X-Amz-Signature=abc",
    ],
)
def test_out_of_range_token_is_forbidden(test_client, token):
    session_id = initiate(test_client).json()["session_id"]

    response = upload(test_client, session_id, 1, token)

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "signature_mismatch"


def test_token_for_another_part_is_forbidden(test_client):
    session_id = initiate(test_client).json()["session_id"]
    token = presign(test_client, session_id, 1)["token"]

    response = upload(test_client, session_id, 2, token)

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "part_mismatch"


def test_run_complete_and_verify(test_client):
    session_id = initiate(test_client).json()["session_id"]

    response = test_client.post("/upload/run", json={"session_id": session_id})
    assert response.status_code == 200
    session = response.json()
    assert session["status"] == "completed"
    assert "received" not in session
    etag = session["etag"]["value"]

    # completing an already completed session returns the same ETag
    response = test_client.post("/upload/complete", json={"session_id": session_id})
    assert response.json()["etag"] == etag

    response = test_client.post("/upload/verify", json={"session_id": session_id, "expected_etag": etag})
    assert response.status_code == 200
    body = response.json()
    assert body["result"]["ok"] is True
    assert body["result"]["etag_match"] is True
    assert body["reassembly"]["match"] is True
    assert body["reassembly"]["size"] == 10


def test_verify_with_wrong_etag(test_client):
    session_id = initiate(test_client).json()["session_id"]
    test_client.post("/upload/run", json={"session_id": session_id})

    response = test_client.post("/upload/verify", json={"session_id": session_id, "expected_etag": "abc-3"})

    assert response.json()["result"]["ok"] is False
    assert response.json()["result"]["etag_match"] is False


def test_complete_before_all_parts_is_conflict(test_client):
    session_id = initiate(test_client).json()["session_id"]

    response = test_client.post("/upload/complete", json={"session_id": session_id})

    assert response.status_code == 409


def test_abort_then_submit_is_conflict(test_client):
    session_id = initiate(test_client).json()["session_id"]
    token = presign(test_client, session_id, 1)["token"]

    response = test_client.post("/upload/abort", json={"session_id": session_id})
    assert response.json() == {"status": "aborted"}

    assert upload(test_client, session_id, 1, token).status_code == 409
    session = test_client.get(f"/upload/session/{session_id}").json()
    assert session["status"] == "aborted"


def test_abort_completed_session_is_conflict(test_client):
    session_id = initiate(test_client).json()["session_id"]
    test_client.post("/upload/run", json={"session_id": session_id})

    response = test_client.post("/upload/abort", json={"session_id": session_id})

    assert response.status_code == 409


def test_resume_keeps_uploaded_parts(test_client):
    session_id = initiate(test_client).json()["session_id"]
    token = presign(test_client, session_id, 1)["token"]
    assert upload(test_client, session_id, 1, token).status_code == 200

    response = test_client.post("/upload/resume", json={"session_id": session_id})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "resumed"
    assert body["missing_parts"] == [2, 3]
    assert body["session"]["resumed_from"] == session_id
    new_id = body["session"]["session_id"]
    assert test_client.get(f"/upload/session/{session_id}").json()["status"] == "aborted"

    session = test_client.post("/upload/run", json={"session_id": new_id}).json()
    assert session["status"] == "completed"


def test_unknown_session(test_client):
    assert test_client.get("/upload/session/missing").status_code == 404
    response = test_client.post("/upload/presigned-url", data={"session_id": "missing", "part_number": "1"})
    assert response.status_code == 404


def test_unknown_part_number(test_client):
    session_id = initiate(test_client).json()["session_id"]
    response = test_client.post("/upload/presigned-url", data={"session_id": session_id, "part_number": "9"})
    assert response.status_code == 400


def test_active_sessions(test_client):
    active_id = initiate(test_client).json()["session_id"]
    done_id = initiate(test_client).json()["session_id"]
    test_client.post("/upload/run", json={"session_id": done_id})

    sessions = test_client.get("/upload/sessions/active").json()["sessions"]

    assert [s["session_id"] for s in sessions] == [active_id]


def test_inspect_bytes(test_client):
    response = test_client.post(
        "/inspect",
        files={"file": ("data.bin", bytes([0x12, 0x34, 0x41, 0x00]))},
        data={"offset": "0", "kinds": "uint16, ascii", "endianness": "little"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["size"] == "4 B"
    assert [row["interpreted_value"] for row in body["rows"]] == [0x3412, "."]
    assert body["rows"][0]["raw_bytes"] == "12 34"


def test_inspect_rejects_unknown_kind(test_client):
    response = test_client.post(
        "/inspect",
        files={"file": ("data.bin", b"abcd")},
        data={"kinds": "uint128"},
    )
    assert response.status_code == 400


def test_inspect_past_the_end(test_client):
    response = test_client.post(
        "/inspect",
        files={"file": ("data.bin", b"ab")},
        data={"offset": "1", "kinds": "uint32"},
    )
    assert response.status_code == 400
    assert "needs 4 byte(s)" in response.json()["detail"]


def test_hex_dump(test_client):
    response = test_client.post(
        "/inspect/hexdump",
        files={"file": ("data.bin", b"Hello, World!" + bytes(40))},
        data={"rows": "2"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_bytes"] == 53
    assert body["has_more"] is True
    assert body["rows"][0]["ascii"] == "Hello, World!..."
    assert body["rows"][1]["offset"] == 16
