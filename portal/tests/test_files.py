import pytest
from botocore.exceptions import ClientError

from portal import folders, models
from portal.tests.conftest import BUCKET_NAME
from portal.utils import s3_utils


@pytest.fixture
def tenant(db, make_company, headers_for):
    """A company with its root folder and a customer session for it."""
    company = make_company("Acme")
    root = db.query(models.Folder).filter_by(company_id=company.id).one()
    headers = headers_for(user_id=1, company_id=company.id, username="alice")
    return company, root, headers


def upload(client, headers, folder_id, name, body, content_type):
    return client.post(
        "/files/upload",
        headers=headers,
        data={"folderId": str(folder_id)},
        files={"upload_file": (name, body, content_type)},
    )


def test_upload_lands_under_folder_prefix(client, s3, tenant):
    company, root, headers = tenant

    res = upload(client, headers, root.id, "report.pdf", b"%PDF-1.4", "application/pdf")
    assert res.status_code == 200
    stored = res.json()["file"]
    assert stored["pathname"] == f"company-{company.id}/report.pdf"
    assert stored["filename"] == "report.pdf"
    assert stored["size"] == 8

    obj = s3.get_object(Bucket=BUCKET_NAME, Key=stored["pathname"])
    assert obj["Body"].read() == b"%PDF-1.4"
    assert obj["ContentDisposition"] == 'attachment; filename="report.pdf"'


def test_upload_filename_cannot_escape_folder(client, s3, tenant):
    company, root, headers = tenant

    res = upload(client, headers, root.id, "../../etc/passwd.txt", b"x", "text/plain")
    assert res.status_code == 200
    key = res.json()["file"]["pathname"]
    prefix = f"company-{company.id}/"
    assert key.startswith(prefix)
    assert "/" not in key[len(prefix):]
    assert ".." not in key


def test_upload_rejects_disallowed_type(client, s3, tenant):
    _, root, headers = tenant

    res = upload(client, headers, root.id, "page.html", b"<html>", "text/html")
    assert res.status_code == 400
    assert s3.list_objects_v2(Bucket=BUCKET_NAME).get("KeyCount", 0) == 0


def test_upload_rejects_oversized_file(client, tenant, monkeypatch):
    _, root, headers = tenant
    monkeypatch.setattr(s3_utils, "MAX_UPLOAD_BYTES", 10)

    res = upload(client, headers, root.id, "big.txt", b"x" * 11, "text/plain")
    assert res.status_code == 400
    assert "maximum upload size" in res.json()["detail"]


def test_upload_to_shared_folder_is_admin_only(client, db, tenant, admin_headers):
    _, _, headers = tenant
    shared = folders.create_folder(db, "Shared", "shared")

    denied = upload(client, headers, shared.id, "notes.txt", b"x", "text/plain")
    assert denied.status_code == 403

    allowed = upload(client, admin_headers, shared.id, "notes.txt", b"x", "text/plain")
    assert allowed.status_code == 200


def test_upload_storage_failure_is_bad_gateway(client, s3, tenant, monkeypatch):
    _, root, headers = tenant

    def broken(**kwargs):
        raise ClientError({"Error": {"Code": "InternalError", "Message": "down"}}, "PutObject")

    monkeypatch.setattr(s3, "put_object", broken)
    res = upload(client, headers, root.id, "notes.txt", b"x", "text/plain")
    assert res.status_code == 502


def test_list_returns_direct_children_only(client, db, tenant, put_blob):
    company, root, headers = tenant
    folders.create_folder(db, "Sub", None, parent_id=root.id)
    put_blob(f"company-{company.id}/a.txt")
    put_blob(f"company-{company.id}/b.pdf")
    put_blob(f"company-{company.id}/Sub/nested.txt")

    res = client.get("/files/list", headers=headers, params={"folderId": root.id})
    assert res.status_code == 200
    body = res.json()
    assert body["folder"]["blobPrefix"] == f"company-{company.id}/"
    assert body["folder"]["companyName"] == "Acme"
    assert sorted(f["filename"] for f in body["files"]) == ["a.txt", "b.pdf"]
    assert db.query(models.AuditLog).filter_by(action="FILES_LISTED").count() == 1


def test_list_other_company_looks_like_unknown_folder(client, make_company, db, tenant):
    other = make_company("Globex")
    folder = db.query(models.Folder).filter_by(company_id=other.id).one()
    _, _, headers = tenant

    hidden = client.get("/files/list", headers=headers, params={"folderId": folder.id})
    missing = client.get("/files/list", headers=headers, params={"folderId": 9999})
    assert hidden.status_code == missing.status_code == 404
    assert hidden.json() == missing.json()


def test_list_unknown_folder(client, tenant):
    _, _, headers = tenant
    res = client.get("/files/list", headers=headers, params={"folderId": 9999})
    assert res.status_code == 404


def test_list_requires_session(client, tenant):
    _, root, _ = tenant
    res = client.get("/files/list", params={"folderId": root.id})
    assert res.status_code == 401


def test_restricted_account_cannot_list(client, tenant, headers_for):
    company, root, _ = tenant
    headers = headers_for(user_id=1, company_id=company.id, status="past_due")

    res = client.get("/files/list", headers=headers, params={"folderId": root.id})
    assert res.status_code == 403
    assert res.json()["detail"] == "Account access restricted. Please contact support."


def test_download_streams_blob(client, db, tenant, put_blob):
    company, _, headers = tenant
    url = put_blob(f"company-{company.id}/invoice.txt", b"pay up")

    res = client.get("/files/download", headers=headers, params={"url": url})
    assert res.status_code == 200
    assert res.content == b"pay up"
    assert 'filename="invoice.txt"' in res.headers["content-disposition"]
    assert db.query(models.AuditLog).filter_by(action="FILE_DOWNLOADED").count() == 1


def test_download_shared_file_as_customer(client, db, tenant, put_blob):
    _, _, headers = tenant
    folders.create_folder(db, "Shared", "shared")
    url = put_blob("shared/manual.pdf", b"read me")

    res = client.get("/files/download", headers=headers, params={"url": url})
    assert res.status_code == 200
    assert res.content == b"read me"


def test_download_from_other_company_looks_missing(client, make_company, tenant, put_blob):
    other = make_company("Globex")
    url = put_blob(f"company-{other.id}/secret.pdf")
    _, _, headers = tenant

    res = client.get("/files/download", headers=headers, params={"url": url})
    assert res.status_code == 404
    assert res.json()["detail"] == "Could not determine file location"


def test_download_rejects_foreign_urls(client, tenant):
    _, _, headers = tenant
    foreign = client.get("/files/download", headers=headers,
                         params={"url": "https://evil.example.com/company-1/x.pdf"})
    assert foreign.status_code == 404
    assert foreign.json()["detail"] == "Could not determine file location"

    traversal = client.get("/files/download", headers=headers,
                           params={"url": s3_utils.url_for("company-1/../company-2/x.pdf")})
    assert traversal.status_code == 400
    assert traversal.json()["detail"] == "Invalid file URL"


def test_delete_by_foreign_url_is_not_found(client, tenant):
    _, _, headers = tenant
    res = client.request("DELETE", "/files/delete", headers=headers,
                         json={"url": "https://evil.example.com/company-1/x.pdf"})
    assert res.status_code == 404


def test_download_outside_any_folder(client, tenant, put_blob):
    _, _, headers = tenant
    url = put_blob("loose/file.txt")

    res = client.get("/files/download", headers=headers, params={"url": url})
    assert res.status_code == 404
    assert res.json()["detail"] == "Could not determine file location"


def test_download_missing_blob(client, tenant):
    company, _, headers = tenant
    url = s3_utils.url_for(f"company-{company.id}/gone.txt")

    res = client.get("/files/download", headers=headers, params={"url": url})
    assert res.status_code == 404


def test_delete_removes_blob(client, s3, tenant, put_blob):
    company, _, headers = tenant
    key = f"company-{company.id}/old.txt"
    url = put_blob(key)

    res = client.request("DELETE", "/files/delete", headers=headers, json={"url": url})
    assert res.status_code == 200
    assert s3.list_objects_v2(Bucket=BUCKET_NAME, Prefix=key).get("KeyCount", 0) == 0

    again = client.request("DELETE", "/files/delete", headers=headers, json={"url": url})
    assert again.status_code == 200


def test_delete_in_shared_folder_is_forbidden_for_customers(client, db, s3, tenant, put_blob):
    _, _, headers = tenant
    folders.create_folder(db, "Shared", "shared")
    url = put_blob("shared/manual.pdf")

    res = client.request("DELETE", "/files/delete", headers=headers, json={"url": url})
    assert res.status_code == 403
    assert s3.list_objects_v2(Bucket=BUCKET_NAME, Prefix="shared/")["KeyCount"] == 1


def test_restricted_account_may_delete(client, tenant, headers_for, put_blob):
    company, _, _ = tenant
    url = put_blob(f"company-{company.id}/old.txt")
    headers = headers_for(user_id=1, company_id=company.id, status="suspended")

    res = client.request("DELETE", "/files/delete", headers=headers, json={"url": url})
    assert res.status_code == 200


def test_save_metadata(client, db, tenant):
    company, root, headers = tenant
    url = s3_utils.url_for(f"company-{company.id}/report.pdf")

    res = client.post("/files/save-metadata", headers=headers,
                      json={"folderId": root.id, "filename": "report.pdf", "url": url, "size": 12})
    assert res.status_code == 200
    record = db.get(models.File, res.json()["id"])
    assert record.folder_id == root.id
    assert record.size == 12


def test_save_metadata_rejects_url_outside_folder(client, db, tenant):
    _, root, headers = tenant
    folders.create_folder(db, "Shared", "shared")
    url = s3_utils.url_for("shared/report.pdf")

    res = client.post("/files/save-metadata", headers=headers,
                      json={"folderId": root.id, "filename": "report.pdf", "url": url})
    assert res.status_code == 400
