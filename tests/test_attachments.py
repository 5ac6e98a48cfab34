"""
Tests for uploads, the job card workflow and generated assembly cards.
"""
from mfg_tracker.models import Attachment, WorkOrder, db


def _upload(client, headers, work_order_id, file_tuple, **form):
    data = dict(form)
    if file_tuple is not None:
        data["file"] = file_tuple
    return client.post(
        f"/api/mfg/work-orders/{work_order_id}/attachments",
        data=data,
        headers=headers,
        content_type="multipart/form-data",
    )


def _attachment_count():
    db.session.expire_all()
    return db.session.query(Attachment).count()


def _fail_commit():
    raise RuntimeError("database unavailable")


# ==============================================================================
# UPLOAD VALIDATION
# ==============================================================================

class TestUploadValidation:
    """Every rejected upload leaves neither a row nor a blob behind."""

    def test_missing_kind(self, client, operator_headers, make_work_order, make_file, blob_files):
        work_order = make_work_order("pcb")
        response = _upload(client, operator_headers, work_order.id, make_file(), category="intake")
        assert response.status_code == 400
        assert response.get_json()["message"] == "Kind and category are required"
        assert _attachment_count() == 0
        assert blob_files() == []

    def test_missing_file(self, client, operator_headers, make_work_order):
        work_order = make_work_order("pcb")
        response = _upload(client, operator_headers, work_order.id, None, kind="bom", category="intake")
        assert response.status_code == 400
        assert response.get_json()["message"] == "File is required"

    def test_kind_of_other_class(self, client, operator_headers, make_work_order, make_file, blob_files):
        work_order = make_work_order("pcb")
        response = _upload(
            client, operator_headers, work_order.id, make_file(),
            kind="test_report", category="intake",
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid kind"
        assert blob_files() == []

    def test_invalid_category(self, client, operator_headers, make_work_order, make_file, blob_files):
        work_order = make_work_order("assembly")
        response = _upload(
            client, operator_headers, work_order.id, make_file(),
            kind="bom", category="nc_drill",
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid category"
        assert blob_files() == []

    def test_invalid_mime(self, client, operator_headers, make_work_order, make_file, blob_files):
        work_order = make_work_order("pcb")
        response = _upload(
            client, operator_headers, work_order.id,
            make_file(b"MZ", "setup.exe", "application/x-msdownload"),
            kind="spec", category="intake",
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Invalid file type for this upload category"
        assert _attachment_count() == 0
        assert blob_files() == []

    def test_oversize_file(self, client, operator_headers, make_work_order, make_file, blob_files):
        work_order = make_work_order("pcb")
        payload = b"\0" * (51 * 1024 * 1024)
        response = _upload(
            client, operator_headers, work_order.id,
            make_file(payload, "huge.pdf"),
            kind="spec", category="intake",
        )
        assert response.status_code == 400
        assert response.get_json()["message"].startswith("File too large")
        assert blob_files() == []

    def test_unknown_work_order(self, client, operator_headers, app, make_file, blob_files):
        response = _upload(
            client, operator_headers, "WO-NOPE", make_file(), kind="spec", category="intake"
        )
        assert response.status_code == 404
        assert blob_files() == []


class TestUpload:

    def test_pdf_upload(self, client, operator_headers, make_work_order, make_file, upload_dir):
        work_order = make_work_order("pcb")
        response = _upload(
            client, operator_headers, work_order.id,
            make_file(b"%PDF-1.4 gerber", "board spec.pdf"),
            kind="spec", category="intake", description="Customer spec",
        )
        assert response.status_code == 201
        data = response.get_json()["attachment"]
        assert data["originalName"] == "board spec.pdf"
        assert data["filename"].endswith("_board_spec.pdf")
        assert data["url"] == f"http://testserver/api/uploads/{data['filename']}"
        assert data["size"] == len(b"%PDF-1.4 gerber")
        assert (upload_dir / data["filename"]).read_bytes() == b"%PDF-1.4 gerber"

    def test_drill_file_bypasses_mime_check(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        response = _upload(
            client, operator_headers, work_order.id,
            make_file(b"M48\nT01C0.8", "board.drl", "application/x-unknown"),
            kind="drill_file", category="nc_drill",
        )
        assert response.status_code == 201

    def test_job_card_upload_starts_pending(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        response = _upload(
            client, operator_headers, work_order.id, make_file(name="card.pdf"),
            kind="job_card", category="intake", operatorName="Ravi",
        )
        data = response.get_json()["attachment"]
        assert data["approvalStatus"] == "pending"
        assert data["version"] == 1
        assert data["operatorName"] == "Ravi"
        assert data["history"][0]["action"] == "created"

    def test_list_attachments(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        _upload(client, operator_headers, work_order.id, make_file(), kind="spec", category="intake")
        response = client.get(
            f"/api/mfg/work-orders/{work_order.wo_number}/attachments", headers=operator_headers
        )
        assert response.status_code == 200
        assert len(response.get_json()["attachments"]) == 1


# ==============================================================================
# JOB CARD WORKFLOW
# ==============================================================================

class TestJobCardWorkflow:

    def _card(self, client, headers, work_order, make_file):
        response = _upload(
            client, headers, work_order.id, make_file(name="card.pdf"),
            kind="job_card", category="intake",
        )
        return response.get_json()["attachment"]["filename"]

    def test_approve(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/approve",
            json={"notes": "looks good"},
            headers=operator_headers,
        )
        assert response.status_code == 200
        card = response.get_json()["jobCard"]
        assert card["approvalStatus"] == "approved"
        assert card["approvedBy"] == "Floor Operator"
        assert card["history"][-1]["previousStatus"] == "pending"
        assert card["history"][-1]["newStatus"] == "approved"

    def test_reject_requires_reason(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/reject",
            json={"reason": "  "},
            headers=operator_headers,
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Rejection reason is required"

    def test_reject(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/reject",
            json={"reason": "Wrong revision"},
            headers=operator_headers,
        )
        card = response.get_json()["jobCard"]
        assert card["approvalStatus"] == "rejected"
        assert card["rejectionReason"] == "Wrong revision"

    def test_comment(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/comments",
            json={"comment": "Check drill sizes"},
            headers=operator_headers,
        )
        assert response.status_code == 201
        entry = response.get_json()["jobCard"]["history"][-1]
        assert entry["action"] == "comment_added"
        assert entry["notes"] == "Check drill sizes"

    def test_unknown_job_card(self, client, operator_headers, make_work_order):
        work_order = make_work_order("pcb")
        response = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/nope.pdf/approve",
            json={},
            headers=operator_headers,
        )
        assert response.status_code == 404
        assert response.get_json()["message"] == "Work order or job card not found"

    def test_new_version(self, client, operator_headers, make_work_order, make_file, upload_dir):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/update",
            data={"file": make_file(b"%PDF-1.4 v2", "card.pdf"), "notes": "revised"},
            headers=operator_headers,
            content_type="multipart/form-data",
        )
        assert response.status_code == 201
        card = response.get_json()["jobCard"]
        assert card["filename"] == filename[:-len(".pdf")] + "_v2.pdf"
        assert card["version"] == 2
        assert card["approvalStatus"] == "pending"
        assert card["parentJobCard"] == filename
        assert (upload_dir / card["filename"]).read_bytes() == b"%PDF-1.4 v2"
        assert (upload_dir / filename).exists()

    def test_new_version_requires_file(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/update",
            data={"notes": "no file"},
            headers=operator_headers,
            content_type="multipart/form-data",
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == "Updated job card file is required"

    def test_update_rejects_non_document(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/update",
            data={"file": make_file(b"a,b", "card.csv", "text/csv")},
            headers=operator_headers,
            content_type="multipart/form-data",
        )
        assert response.status_code == 400
        assert response.get_json()["message"] == (
            "Invalid file type. Only PDF and images are allowed for job card updates."
        )

    def test_update_in_place_records_operator(self, client, operator_headers, make_work_order,
                                              make_file, upload_dir):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/update",
            data={
                "file": make_file(b"%PDF-1.4 edited", "card.pdf"),
                "updateExisting": "true",
                "operatorName": "Priya",
            },
            headers=operator_headers,
            content_type="multipart/form-data",
        )
        assert response.status_code == 200
        card = response.get_json()["jobCard"]
        assert card["filename"] == filename
        assert card["operatorName"] == "Priya"
        assert card["history"][-1]["operatorName"] == "Priya"
        assert card["history"][-1]["action"] == "updated"
        assert (upload_dir / filename).read_bytes() == b"%PDF-1.4 edited"

    def test_in_place_update_keeps_original_when_commit_fails(self, client, operator_headers,
                                                              make_work_order, make_file,
                                                              upload_dir, blob_files, monkeypatch):
        work_order = make_work_order("pcb")
        filename = self._card(client, operator_headers, work_order, make_file)
        original = (upload_dir / filename).read_bytes()

        monkeypatch.setattr(db.session, "commit", _fail_commit)
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{filename}/update",
            data={"file": make_file(b"%PDF-1.4 edited", "card.pdf"), "updateExisting": "true"},
            headers=operator_headers,
            content_type="multipart/form-data",
        )
        monkeypatch.undo()

        assert response.status_code == 500
        assert response.get_json()["message"] == "Failed to update job card"
        assert (upload_dir / filename).read_bytes() == original
        assert blob_files() == [filename]


# ==============================================================================
# DELETE / DOWNLOAD
# ==============================================================================

class TestDeleteAndDownload:

    def test_delete_removes_blob(self, client, operator_headers, make_work_order, make_file, blob_files):
        work_order = make_work_order("pcb")
        filename = _upload(
            client, operator_headers, work_order.id, make_file(), kind="spec", category="intake"
        ).get_json()["attachment"]["filename"]
        assert blob_files() == [filename]

        response = client.delete(
            f"/api/mfg/work-orders/{work_order.id}/attachments/{filename}", headers=operator_headers
        )
        assert response.status_code == 200
        assert blob_files() == []
        assert _attachment_count() == 0

    def test_failed_commit_keeps_blob(self, client, operator_headers, make_work_order, make_file,
                                      blob_files, monkeypatch):
        work_order = make_work_order("pcb")
        filename = _upload(
            client, operator_headers, work_order.id, make_file(), kind="spec", category="intake"
        ).get_json()["attachment"]["filename"]

        monkeypatch.setattr(db.session, "commit", _fail_commit)
        response = client.delete(
            f"/api/mfg/work-orders/{work_order.id}/attachments/{filename}", headers=operator_headers
        )
        monkeypatch.undo()

        assert response.status_code == 500
        assert response.get_json()["message"] == "Failed to delete attachment"
        assert blob_files() == [filename]
        assert _attachment_count() == 1

    def test_delete_unknown(self, client, operator_headers, make_work_order):
        work_order = make_work_order("pcb")
        response = client.delete(
            f"/api/mfg/work-orders/{work_order.id}/attachments/nope.pdf", headers=operator_headers
        )
        assert response.status_code == 404
        assert response.get_json()["message"] == "Work order or attachment not found"

    def test_download(self, client, operator_headers, make_work_order, make_file):
        work_order = make_work_order("pcb")
        filename = _upload(
            client, operator_headers, work_order.id,
            make_file(b"%PDF-1.4 body", "orig.pdf"), kind="spec", category="intake",
        ).get_json()["attachment"]["filename"]
        response = client.get(
            f"/api/mfg/work-orders/{work_order.id}/attachments/{filename}/download",
            headers=operator_headers,
        )
        assert response.status_code == 200
        assert response.data == b"%PDF-1.4 body"
        assert "orig.pdf" in response.headers["Content-Disposition"]

    def test_download_missing_blob(self, client, operator_headers, make_work_order, make_file, upload_dir):
        work_order = make_work_order("pcb")
        filename = _upload(
            client, operator_headers, work_order.id, make_file(), kind="spec", category="intake"
        ).get_json()["attachment"]["filename"]
        (upload_dir / filename).unlink()
        response = client.get(
            f"/api/mfg/work-orders/{work_order.id}/attachments/{filename}/download",
            headers=operator_headers,
        )
        assert response.status_code == 404
        assert response.get_json()["message"] == "File not found on disk"


# ==============================================================================
# ASSEMBLY CARDS
# ==============================================================================

class TestAssemblyCards:

    def test_generate_then_conflict(self, client, operator_headers, make_work_order):
        work_order = make_work_order("assembly")
        url = f"/api/mfg/work-orders/{work_order.id}/generate-assembly-card"
        first = client.post(url, json={}, headers=operator_headers)
        assert first.status_code == 201
        assert first.get_json()["assemblyCard"]["kind"] == "assembly_card"

        second = client.post(url, json={}, headers=operator_headers)
        assert second.status_code == 409
        assert second.get_json()["message"] == "Assembly card already exists for this work order"

    def test_generate_for_pcb_is_not_found(self, client, operator_headers, make_work_order):
        work_order = make_work_order("pcb")
        response = client.post(
            f"/api/mfg/work-orders/{work_order.id}/generate-assembly-card",
            json={},
            headers=operator_headers,
        )
        assert response.status_code == 404
        assert response.get_json()["message"] == "Assembly work order not found"

    def test_approving_card_at_stencil_advances_to_reflow(self, client, operator_headers,
                                                          make_work_order):
        work_order = make_work_order("assembly", stage="assembly_store")
        moved = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/stage",
            json={"stage": "stencil"},
            headers=operator_headers,
        ).get_json()["workOrder"]
        card = next(a for a in moved["attachments"] if a["kind"] == "assembly_card")

        response = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{card['filename']}/approve",
            json={},
            headers=operator_headers,
        )
        assert response.status_code == 200
        assert response.get_json()["workOrder"]["stage"] == "assembly_reflow"

        db.session.expire_all()
        assert db.session.get(WorkOrder, work_order.id).stage == "assembly_reflow"

    def test_approving_card_elsewhere_keeps_stage(self, client, operator_headers, make_work_order):
        work_order = make_work_order("assembly", stage="th_soldering")
        card = client.post(
            f"/api/mfg/work-orders/{work_order.id}/generate-assembly-card",
            json={},
            headers=operator_headers,
        ).get_json()["assemblyCard"]
        response = client.patch(
            f"/api/mfg/work-orders/{work_order.id}/job-cards/{card['filename']}/approve",
            json={},
            headers=operator_headers,
        )
        assert response.get_json()["workOrder"]["stage"] == "th_soldering"
