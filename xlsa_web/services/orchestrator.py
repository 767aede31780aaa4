from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from xlsa_web.config.ini_config import GenerationThresholds
from xlsa_web.domain.models import (
    AnalysisRequest,
    CreditAccount,
    GeneratedFile,
    GenerationRequest,
    ModificationRequest,
    TierProfile,
    WorkbookDesign,
)
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome
from xlsa_web.ports import AnalysisStore, CreditLedger, FileStore
from xlsa_web.repositories.upload_repository import UploadRepository, safe_filename
from xlsa_web.services.admission import AdmissionController
from xlsa_web.services.ai_assist import ConversationDesigner, ModificationPlanner
from xlsa_web.services.analyzers import AnalyzerDeps, validate_workbook_path
from xlsa_web.services.generators import FALLBACK, GeneratorDeps, select_strategy
from xlsa_web.services.provider_router import ProviderRouter
from xlsa_web.services.registry import StrategyRegistry
from xlsa_web.services.templates import TemplateCatalog
from xlsa_web.services.tier_policy import canonical_tier, entitled_tiers
from xlsa_web.services.workbook_editing import apply_modifications
from xlsa_web.services.workbook_inspection import StructureAnalyzer

logger = logging.getLogger(__name__)

SOURCE_KINDS = ("template", "conversation")


def select_tier(
    router: ProviderRouter,
    account: CreditAccount,
    file_size_bytes: int,
    request_text: str,
    requested_tier: Optional[str],
) -> Outcome[TierProfile]:
    """
    An explicit tier must exist in the profile table (else InvalidTier).
    It is used when the account is entitled to it; otherwise the tier is
    recommended automatically.
    """
    if requested_tier:
        resolved = router.resolve(requested_tier)
        if resolved.is_err():
            return resolved
        if canonical_tier(requested_tier) in entitled_tiers(account, router.policy):
            return resolved
        logger.info("Owner %s is not entitled to tier %s; recommending one", account.owner_id, requested_tier)
    return Ok(router.resolve_automatic(file_size_bytes, request_text, account, requested_tier))


@dataclass
class AdmissionGate:
    """Shared tier-selection and admission step of every command."""
    ledger: CreditLedger
    router: ProviderRouter
    admission: AdmissionController

    def open(self, owner_id: int, file_size_bytes: int, request_text: str, tier: Optional[str]):
        account = self.ledger.get(owner_id)
        if account is None:
            return Err(AppError.not_found("Account", owner_id))

        profile = select_tier(self.router, account, file_size_bytes, request_text, tier)
        if profile.is_err():
            return profile

        admitted = self.admission.check(profile.value.tier_id, owner_id, file_size_bytes, request_text)
        if admitted.is_err():
            return admitted
        return Ok((profile.value, admitted.value))


@dataclass
class AnalyzeSpreadsheetCommand:
    """
    Use case: analyze an owned, uploaded workbook.
    Validating -> TierSelection -> AdmissionCheck -> Executing -> settle + persist.
    """
    files: FileStore
    analyses: AnalysisStore
    gate: AdmissionGate
    analyzers: StrategyRegistry
    analyzer_deps: AnalyzerDeps = field(default_factory=AnalyzerDeps)

    def execute(self, req: AnalysisRequest, cancel_token=None) -> Outcome[dict]:
        try:
            return self._execute(req, cancel_token)
        except Exception:
            logger.exception("Analysis of file %s failed unexpectedly", req.file_id)
            return Err(AppError.execution())

    def _execute(self, req: AnalysisRequest, cancel_token) -> Outcome[dict]:
        if req.analysis_kind not in self.analyzers:
            return Err(AppError.unknown_strategy(req.analysis_kind))

        record = self.files.find_owned(req.file_id, req.owner_id)
        if record is None:
            return Err(AppError.not_found("File", req.file_id))

        opened = self.gate.open(req.owner_id, record.size_bytes, req.request_text, req.tier)
        if opened.is_err():
            return opened
        profile, admission = opened.value

        try:
            return self._admitted(req, record, profile, admission, cancel_token)
        except Exception:
            self.gate.admission.release(admission)
            self.files.update_status(record.file_id, "failed")
            raise

    def _admitted(self, req: AnalysisRequest, record, profile: TierProfile, admission, cancel_token) -> Outcome[dict]:
        outcome = self._run(req, record, profile, cancel_token)
        if outcome.is_err():
            self.gate.admission.release(admission)
            self.files.update_status(record.file_id, "failed")
            return outcome

        findings = outcome.value
        units = 1 if findings.ai_insights else 0
        charged = self.gate.admission.settle(admission, units)
        record_id = self.analyses.record_result(
            record.file_id, req.owner_id, findings.to_dict(), profile.tier_id, charged
        )
        self.files.update_status(record.file_id, "analyzed")

        logger.info(
            "Analysis %s done: file=%s kind=%s tier=%s credits=%s",
            record_id, record.file_id, req.analysis_kind, profile.tier_id, charged,
        )
        return Ok({
            "analysis_id": record_id,
            "file_id": record.file_id,
            "analysis_kind": req.analysis_kind,
            "tier": profile.tier_id,
            "model": profile.model_id,
            "credits_used": charged,
            "findings": findings.to_dict(),
        })

    def _run(self, req: AnalysisRequest, record, profile: TierProfile, cancel_token):
        created = self.analyzers.create(req.analysis_kind, self.analyzer_deps)
        if created.is_err():
            return created

        options = dict(req.options or {})
        options["tier_profile"] = profile
        if cancel_token is not None:
            options["cancel_token"] = cancel_token

        self.files.update_status(record.file_id, "analyzing")
        return created.value.analyze(record.path, options)


@dataclass
class ModifySpreadsheetCommand:
    """Use case: AI-planned edits written to a new copy of an owned workbook."""
    files: FileStore
    uploads: UploadRepository
    gate: AdmissionGate
    planner: ModificationPlanner
    structure_analyzer: StructureAnalyzer = field(default_factory=StructureAnalyzer)

    def execute(self, req: ModificationRequest, cancel_token=None) -> Outcome[dict]:
        try:
            return self._execute(req, cancel_token)
        except Exception:
            logger.exception("Modification of file %s failed unexpectedly", req.file_id)
            return Err(AppError.execution())

    def _execute(self, req: ModificationRequest, cancel_token) -> Outcome[dict]:
        request_text = (req.request_text or "").strip()
        if not request_text:
            return Err(AppError.invalid_input("Modification request is required"))

        record = self.files.find_owned(req.file_id, req.owner_id)
        if record is None:
            return Err(AppError.not_found("File", req.file_id))

        checked = validate_workbook_path(record.path)
        if checked.is_err():
            return checked

        opened = self.gate.open(req.owner_id, record.size_bytes, request_text, req.tier)
        if opened.is_err():
            return opened
        profile, admission = opened.value

        try:
            return self._admitted(req, record, request_text, profile, admission, cancel_token)
        except Exception:
            self.gate.admission.release(admission)
            raise

    def _admitted(self, req: ModificationRequest, record, request_text: str, profile: TierProfile, admission, cancel_token) -> Outcome[dict]:
        outcome = self._run(record, request_text, profile, cancel_token)
        if outcome.is_err():
            self.gate.admission.release(admission)
            return outcome

        edit = outcome.value
        name = f"modified_{safe_filename(record.original_name)}"
        path = self.uploads.save_result(req.owner_id, name, edit.content)
        new_record = self.files.add(req.owner_id, name, path, len(edit.content), status="modified")
        charged = self.gate.admission.settle(admission, len(edit.applied))

        logger.info(
            "Modified file %s -> %s: applied=%d skipped=%d tier=%s credits=%s",
            record.file_id, new_record.file_id, len(edit.applied), len(edit.skipped), profile.tier_id, charged,
        )
        return Ok({
            "file_id": new_record.file_id,
            "original_file_id": record.file_id,
            "filename": name,
            "download_url": f"/download/{new_record.file_id}?owner_id={req.owner_id}",
            "modifications_applied": len(edit.applied),
            "modifications": edit.applied,
            "skipped": edit.skipped,
            "tier": profile.tier_id,
            "model": profile.model_id,
            "credits_used": charged,
        })

    def _run(self, record, request_text: str, profile: TierProfile, cancel_token):
        scanned = self.structure_analyzer.analyze(record.path)
        if scanned.is_err():
            return scanned
        structure = scanned.value.structure

        context = {
            "filename": record.original_name,
            "sheet_names": [s["name"] for s in structure.get("sheets", [])],
            "has_formulas": structure.get("total_formulas", 0) > 0,
        }
        planned = self.planner.plan(request_text, context, profile)
        if planned.is_err():
            return planned

        if cancel_token is not None and cancel_token.is_set():
            return Err(AppError.cancelled())
        return apply_modifications(record.path, planned.value)


@dataclass
class GenerateSpreadsheetCommand:
    """
    Use case: build a workbook from a template or a conversation.
    The size-selected generator gets one retry on the fallback generator.
    """
    files: FileStore
    uploads: UploadRepository
    gate: AdmissionGate
    generators: StrategyRegistry
    templates: TemplateCatalog = field(default_factory=TemplateCatalog)
    designer: Optional[ConversationDesigner] = None
    thresholds: GenerationThresholds = field(default_factory=GenerationThresholds)

    def execute(self, req: GenerationRequest, cancel_token=None) -> Outcome[dict]:
        try:
            return self._execute(req, cancel_token)
        except Exception:
            logger.exception("Generation for owner %s failed unexpectedly", req.owner_id)
            return Err(AppError.execution())

    def _execute(self, req: GenerationRequest, cancel_token) -> Outcome[dict]:
        spec = req.spec
        if spec.source_kind not in SOURCE_KINDS:
            return Err(AppError.invalid_input(f"Unsupported source kind: {spec.source_kind}"))
        if not isinstance(spec.payload, dict):
            return Err(AppError.invalid_input("Generation payload must be an object"))

        design = None
        request_text = ""
        if spec.source_kind == "template":
            rendered = self.templates.render(spec.payload)
            if rendered.is_err():
                return rendered
            design = rendered.value
        else:
            messages = spec.payload.get("messages")
            if not isinstance(messages, list) or not messages:
                return Err(AppError.invalid_input("Conversation messages are required"))
            if self.designer is None:
                return Err(AppError.provider("none", "No AI backend configured for conversation designs"))
            request_text = "\n".join(str(m.get("content", "")) for m in messages if isinstance(m, dict))

        opened = self.gate.open(req.owner_id, 0, request_text, req.tier)
        if opened.is_err():
            return opened
        profile, admission = opened.value

        try:
            return self._admitted(req, design, profile, admission, cancel_token)
        except Exception:
            self.gate.admission.release(admission)
            raise

    def _admitted(self, req: GenerationRequest, design: Optional[WorkbookDesign], profile: TierProfile, admission, cancel_token) -> Outcome[dict]:
        outcome = self._run(req, design, profile, cancel_token)
        if outcome.is_err():
            self.gate.admission.release(admission)
            return outcome

        generated: GeneratedFile = outcome.value
        path = self.uploads.save_result(req.owner_id, generated.filename, generated.content)
        record = self.files.add(req.owner_id, generated.filename, path, len(generated.content), status="generated")
        charged = self.gate.admission.settle(admission, generated.sheets_written)

        metrics = generated.metrics
        logger.info(
            "Generated %s with %s in %d ms (%s rows, %s rows/s), credits=%s",
            generated.filename, generated.strategy_used, generated.generation_time_ms,
            metrics.rows_written if metrics else "?", metrics.rows_per_second if metrics else "?", charged,
        )
        return Ok({
            "file_id": record.file_id,
            "filename": generated.filename,
            "download_url": f"/download/{record.file_id}?owner_id={req.owner_id}",
            "strategy_used": generated.strategy_used,
            "generation_time_ms": generated.generation_time_ms,
            "sheets_written": generated.sheets_written,
            "rows_written": metrics.rows_written if metrics else None,
            "tier": profile.tier_id,
            "credits_used": charged,
        })

    def _run(self, req: GenerationRequest, design: Optional[WorkbookDesign], profile: TierProfile, cancel_token):
        if design is None:
            designed = self.designer.design(req.spec.payload["messages"], profile)
            if designed.is_err():
                return designed
            design = designed.value

        filename = safe_filename(req.filename or design.title, default="generated.xlsx")
        if not filename.lower().endswith(".xlsx"):
            filename += ".xlsx"

        size = req.spec.size_hint if req.spec.size_hint is not None else design.size_measure
        return self.generate_with_fallback(select_strategy(size, self.thresholds), design, filename, cancel_token)

    def generate_with_fallback(self, strategy: str, design: WorkbookDesign, filename: str, cancel_token=None):
        primary = self._attempt(strategy, design, filename, cancel_token)
        if primary.is_ok() or primary.error.details.get("cancelled"):
            return primary

        if cancel_token is not None and cancel_token.is_set():
            logger.info("Generation of %s cancelled after %s failed; fallback skipped", filename, strategy)
            return Err(AppError.cancelled())

        logger.warning("Generator %s failed for %s (%s); retrying with fallback", strategy, filename, primary.error.message)
        fallback = self._attempt(FALLBACK, design, filename, cancel_token)
        if fallback.is_ok():
            return fallback
        if fallback.error.details.get("cancelled"):
            return fallback

        logger.error("Fallback generator failed for %s: %s", filename, fallback.error.message)
        return Err(AppError.file_processing(filename))

    def _attempt(self, key: str, design: WorkbookDesign, filename: str, cancel_token) -> Outcome[GeneratedFile]:
        created = self.generators.create(key, GeneratorDeps(thresholds=self.thresholds))
        if created.is_err():
            return created
        try:
            return created.value.generate(design, filename, cancel_token)
        except Exception as e:
            logger.warning("Generator %s raised for %s: %s", key, filename, e)
            return Err(AppError.file_processing(filename, f"{key} generation failed"))


@dataclass
class Orchestrator:
    analyze: AnalyzeSpreadsheetCommand
    modify: ModifySpreadsheetCommand
    generate: GenerateSpreadsheetCommand
