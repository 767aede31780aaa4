## routes.py
from __future__ import annotations

from pathlib import Path

from flask import Blueprint, abort, current_app, jsonify, request, send_file

from xlsa_web.domain.models import (
    XLSX_CONTENT_TYPE,
    AnalysisRequest,
    GenerationRequest,
    GenerationSpec,
    ModificationRequest,
)
from xlsa_web.domain.outcome import AppError, ErrorKind
from xlsa_web.services.analyzers import SUPPORTED_EXTENSIONS

STATUS_BY_KIND = {
    ErrorKind.INVALID_INPUT: 422,
    ErrorKind.UNKNOWN_STRATEGY: 422,
    ErrorKind.INVALID_STRATEGY: 422,
    ErrorKind.INVALID_TIER: 422,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.NOT_FOUND: 404,
}


def status_for(kind: ErrorKind) -> int:
    return STATUS_BY_KIND.get(kind, 500)


def _error_response(error: AppError):
    return jsonify({"success": False, "error": error.to_dict()}), status_for(error.kind)


def _respond(outcome):
    if outcome.is_err():
        if outcome.kind not in STATUS_BY_KIND:
            current_app.logger.warning("Request failed: %s %s", outcome.kind.value, outcome.error.message)
        return _error_response(outcome.error)
    return jsonify({"success": True, "data": outcome.value}), 200


def _safe_int(raw) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    raw = str(raw or "").strip()
    return int(raw) if raw.isdigit() else None


def _optional_float(raw) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _truthy(raw) -> bool:
    return raw is True or str(raw).strip().lower() in ("1", "true", "yes")


def create_blueprint(orchestrator, files, analyses, uploads, runner, channel) -> Blueprint:
    bp = Blueprint("api", __name__)

    def required_ids(payload: dict, *names: str):
        values = []
        for name in names:
            value = _safe_int(payload.get(name))
            if value is None:
                return None, _error_response(AppError.invalid_input(f"{name} must be a positive integer"))
            values.append(value)
        return values, None

    def run_or_submit(payload: dict, topic: str, call):
        if _truthy(payload.get("async")):
            handle = runner.submit(topic, call)
            current_app.logger.info("Task %s queued on topic %s", handle.task_id, topic)
            return jsonify({"success": True, "data": {"task_id": handle.task_id, "topic": topic}}), 202
        return _respond(call(None))

    @bp.post("/api/files")
    def upload_file():
        owner_id = _safe_int(request.form.get("owner_id"))
        if owner_id is None:
            return _error_response(AppError.invalid_input("owner_id must be a positive integer"))

        upload = request.files.get("file")
        if upload is None or not upload.filename:
            return _error_response(AppError.invalid_input("No file provided"))
        if Path(upload.filename).suffix.lower() not in SUPPORTED_EXTENSIONS:
            return _error_response(AppError.invalid_input("Invalid file format", file_name=upload.filename))

        path = uploads.save_upload(owner_id, upload.filename, upload.stream)
        record = files.add(owner_id, upload.filename, path, path.stat().st_size)
        current_app.logger.info("Upload %s stored for owner %s (%d bytes)", record.file_id, owner_id, record.size_bytes)

        return jsonify({"success": True, "data": {
            "file_id": record.file_id,
            "filename": record.original_name,
            "size_bytes": record.size_bytes,
            "status": record.status,
        }}), 201

    @bp.post("/api/analyses")
    def create_analysis():
        payload = request.get_json(silent=True) or {}
        ids, error = required_ids(payload, "file_id", "owner_id")
        if error:
            return error
        file_id, owner_id = ids

        options = payload.get("options") or {}
        if not isinstance(options, dict):
            return _error_response(AppError.invalid_input("options must be an object"))

        req = AnalysisRequest(
            file_id=file_id,
            owner_id=owner_id,
            analysis_kind=(payload.get("analysis_kind") or "comprehensive").strip(),
            options=options,
            tier=payload.get("tier") or None,
            request_text=str(payload.get("request_text") or ""),
        )
        return run_or_submit(payload, f"owner-{owner_id}", lambda token: orchestrator.analyze.execute(req, token))

    @bp.post("/api/modifications")
    def create_modification():
        payload = request.get_json(silent=True) or {}
        ids, error = required_ids(payload, "file_id", "owner_id")
        if error:
            return error
        file_id, owner_id = ids

        req = ModificationRequest(
            file_id=file_id,
            owner_id=owner_id,
            request_text=str(payload.get("request_text") or ""),
            tier=payload.get("tier") or None,
        )
        return run_or_submit(payload, f"owner-{owner_id}", lambda token: orchestrator.modify.execute(req, token))

    @bp.post("/api/generations")
    def create_generation():
        payload = request.get_json(silent=True) or {}
        ids, error = required_ids(payload, "owner_id")
        if error:
            return error
        (owner_id,) = ids

        spec_payload = payload.get("payload")
        if not isinstance(spec_payload, dict):
            return _error_response(AppError.invalid_input("payload must be an object"))

        req = GenerationRequest(
            owner_id=owner_id,
            spec=GenerationSpec(
                source_kind=str(payload.get("source_kind") or "template"),
                payload=spec_payload,
                size_hint=_optional_float(payload.get("size_hint")),
            ),
            filename=str(payload.get("filename") or ""),
            tier=payload.get("tier") or None,
        )
        return run_or_submit(payload, f"owner-{owner_id}", lambda token: orchestrator.generate.execute(req, token))

    @bp.get("/api/analyses/<int:file_id>/latest")
    def latest_analysis(file_id: int):
        owner_id = _safe_int(request.args.get("owner_id"))
        if owner_id is None or files.find_owned(file_id, owner_id) is None:
            return _error_response(AppError.not_found("File", file_id))

        record = analyses.latest_for(file_id)
        if record is None:
            return _error_response(AppError.not_found("Analysis for file", file_id))

        return jsonify({"success": True, "data": {
            "analysis_id": record.record_id,
            "file_id": record.file_id,
            "tier": record.tier_used,
            "credits_used": record.credits_used,
            "created_at": record.created_at,
            "findings": record.findings,
        }}), 200

    @bp.get("/api/tasks/<task_id>")
    def task_status(task_id: str):
        status = runner.status(task_id)
        if status is None:
            return _error_response(AppError.not_found("Task", task_id))
        return jsonify({"success": True, "data": status}), 200

    @bp.delete("/api/tasks/<task_id>")
    def cancel_task(task_id: str):
        handle = runner.get(task_id)
        if handle is None:
            return _error_response(AppError.not_found("Task", task_id))
        handle.cancel()
        current_app.logger.info("Cancellation requested for task %s", task_id)
        return jsonify({"success": True, "data": {"task_id": task_id, "state": handle.state}}), 200

    @bp.get("/api/events/<topic>")
    def events(topic: str):
        limit = _safe_int(request.args.get("limit"))
        return jsonify({"success": True, "data": channel.drain(topic, limit)}), 200

    @bp.get("/download/<int:file_id>")
    def download(file_id: int):
        owner_id = _safe_int(request.args.get("owner_id"))
        record = files.find_owned(file_id, owner_id) if owner_id is not None else None
        if record is None:
            abort(404)

        # path traversal protection: only files inside the storage folder are served
        full = uploads.resolve(record.path)
        if full is None:
            abort(404)

        return send_file(
            full,
            mimetype=XLSX_CONTENT_TYPE if full.suffix.lower() == ".xlsx" else None,
            as_attachment=True,
            download_name=record.original_name,
        )

    return bp
