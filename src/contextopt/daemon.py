"""ContextOpt daemon - HTTP server for context file optimization.

Wraps the engine with file I/O and persistence: reads context files, writes
optimized content and archive files, and records archives, analysis history
and custom rules in SQLite.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

from . import __version__
from .archiver import ArchiveError, archive_stats, find_archive_references, restore_archive
from .config import EngineConfig
from .db import ArchiveStore, StoredArchive
from .engine import ContextAnalysis, analyze, optimize, recommendations_for
from .parser import ParseError
from .planner import describe_plan, generate_plan, strategy_description
from .rules import default_rules, load_rules, merge_rules
from .scoring import Strategy

# Configuration
HOST = os.environ.get("CONTEXTOPT_DAEMON_HOST", "127.0.0.1")
PORT = int(os.environ.get("CONTEXTOPT_DAEMON_PORT", "18766"))
ENGINE_CONFIG = EngineConfig.from_env()

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("contextopt.daemon")

# Database
store = ArchiveStore()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Startup and shutdown logic."""
    await store.init()
    logger.info(f"ContextOpt daemon starting on {HOST}:{PORT}")
    yield
    logger.info("ContextOpt daemon shutting down")


app = FastAPI(
    title="ContextOpt Daemon",
    description="Context file analysis and optimization for Claude Code",
    version=__version__,
    lifespan=lifespan,
)


# Request/Response models
class ContentRequest(BaseModel):
    """Context content, given inline or as a file path."""

    content: str | None = Field(None, description="Raw context file content")
    file_path: str | None = Field(None, description="Path of the context file to read")
    project_dir: str = Field(".", description="Project root for archives and rules")
    use_custom_rules: bool = Field(True, description="Overlay the project's stored rules")


class AnalyzeRequest(ContentRequest):
    record: bool = Field(False, description="Store the analysis in history")


class OptimizeRequest(ContentRequest):
    strategy: Strategy | None = Field(None, description="Strategy (default: recommended)")
    write: bool = Field(False, description="Write the file and archive files, store archives")


class RestoreRequest(ContentRequest):
    archive_id: int
    write: bool = False


class RulesRequest(BaseModel):
    project_dir: str = "."
    rules: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    db_path: str


class AnalyzeResponse(BaseModel):
    optimization_score: int
    recommended_strategy: str
    summary: dict[str, int]
    sections: list[dict[str, Any]]
    issues: list[dict[str, Any]]
    recommendations: list[str]


class PreviewResponse(BaseModel):
    strategy: str
    description: str
    estimated_savings: int
    actions: list[dict[str, Any]]
    skipped: list[dict[str, Any]]
    preview: list[str]


class OptimizeResponse(BaseModel):
    strategy: str
    new_content: str
    applied: list[dict[str, Any]]
    skipped: list[dict[str, Any]]
    stats: dict[str, Any]
    archives: list[dict[str, Any]]
    written: bool


class RestoreResponse(BaseModel):
    content: str
    section_name: str
    written: bool


def _project_key(project_dir: str) -> str:
    return str(Path(project_dir).expanduser().resolve())


def _read_content(request: ContentRequest) -> str:
    if request.content is not None:
        return request.content
    if not request.file_path:
        raise HTTPException(status_code=400, detail="Provide content or file_path")
    try:
        return Path(request.file_path).read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=f"File not found: {request.file_path}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail=f"Cannot read file: {e}") from e


async def _analyze(request: ContentRequest) -> ContextAnalysis:
    content = _read_content(request)
    rules = default_rules()
    if request.use_custom_rules:
        rules = merge_rules(await store.get_rules(_project_key(request.project_dir)), rules)
    try:
        return analyze(content, rules, ENGINE_CONFIG)
    except ParseError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _stored_dict(stored: StoredArchive) -> dict[str, Any]:
    return {"id": stored.id, "created_at": stored.created_at, **stored.archive.to_dict()}


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="ok", version=__version__, db_path=str(store.db_path))


@app.post("/analyze", response_model=AnalyzeResponse)
async def analyze_context(request: AnalyzeRequest):
    """Analyze a context file."""
    analysis = await _analyze(request)
    if request.record:
        await store.record_analysis(
            _project_key(request.project_dir), request.file_path or "<inline>", analysis
        )
    return AnalyzeResponse(
        optimization_score=analysis.optimization_score,
        recommended_strategy=analysis.recommended_strategy,
        summary=vars(analysis.summary),
        sections=[
            {
                "name": c.name,
                "category": c.category,
                "confidence": c.confidence,
                "cues": list(c.cues),
                "lines": c.section.line_count,
                "tokens": c.section.tokens,
            }
            for c in analysis.classified
        ],
        issues=[
            {
                "type": i.type,
                "severity": i.severity,
                "section_name": i.section_name,
                "description": i.description,
                "suggested_action": i.suggested_action,
                "estimated_savings": i.estimated_savings,
                "confidence": i.confidence,
                "action": i.action,
                "source": i.source,
            }
            for i in analysis.issues
        ],
        recommendations=recommendations_for(analysis),
    )


@app.post("/optimize/preview", response_model=PreviewResponse)
async def preview_optimization(request: OptimizeRequest):
    """Show the plan a strategy would apply, without applying it."""
    analysis = await _analyze(request)
    strategy = request.strategy or analysis.recommended_strategy
    plan = generate_plan(
        analysis.document, list(analysis.classified), list(analysis.issues), strategy, ENGINE_CONFIG
    )
    return PreviewResponse(
        strategy=strategy,
        description=strategy_description(strategy),
        estimated_savings=plan.estimated_savings,
        actions=[
            {
                "section_name": a.section_name,
                "kind": a.kind,
                "estimated_savings": a.estimated_savings,
                "target_savings": a.target_savings,
                "issue_types": [i.type for i in a.issues],
                "archive_ref": a.archive_ref,
            }
            for a in plan.actions
        ],
        skipped=[vars(s) for s in plan.skipped],
        preview=describe_plan(plan),
    )


@app.post("/optimize", response_model=OptimizeResponse)
async def optimize_context(request: OptimizeRequest):
    """Optimize a context file; with write=True, persist the result."""
    if request.write and not request.file_path:
        raise HTTPException(status_code=400, detail="write requires file_path")
    analysis = await _analyze(request)
    project = _project_key(request.project_dir)
    source_name = Path(request.file_path).name if request.file_path else "CLAUDE.md"
    output = optimize(analysis, request.strategy, project_path=project, source_name=source_name)
    result = output.result

    archives = [archive.to_dict() for archive in output.archives]
    if request.write:
        # Archives first, so the stubs written below always resolve
        for archive, data in zip(output.archives, archives):
            archive_path = Path(archive.archive_file)
            archive_path.parent.mkdir(parents=True, exist_ok=True)
            archive_path.write_text(archive.to_markdown(), encoding="utf-8")
            data["id"] = await store.put_archive(archive, project)
        Path(request.file_path).write_text(result.new_content, encoding="utf-8")
        await store.record_analysis(
            project,
            request.file_path,
            analysis,
            applied_strategy=output.plan.strategy,
            tokens_saved=result.stats.tokens_saved,
        )
        logger.info(
            f"Wrote {request.file_path}: {result.stats.tokens_saved} tokens saved, "
            f"{len(archives)} archives"
        )

    return OptimizeResponse(
        strategy=output.plan.strategy,
        new_content=result.new_content,
        applied=[{**vars(a), "tokens_saved": a.tokens_saved} for a in result.applied],
        skipped=[vars(s) for s in (*output.plan.skipped, *result.skipped)],
        stats=vars(result.stats),
        archives=archives,
        written=request.write,
    )


@app.get("/archives")
async def list_archives(project_dir: str = ".", limit: int = 50):
    """List stored archives for a project, newest first."""
    stored = await store.list_archives(_project_key(project_dir), limit)
    return {
        "archives": [_stored_dict(s) for s in stored],
        "stats": archive_stats([s.archive for s in stored]),
    }


@app.get("/archives/{archive_id}")
async def get_archive(archive_id: int):
    stored = await store.get_archive(archive_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"Archive {archive_id} not found")
    return {**_stored_dict(stored), "markdown": stored.archive.to_markdown()}


@app.post("/archives/restore", response_model=RestoreResponse)
async def restore(request: RestoreRequest):
    """Put an archived section back into the context file."""
    stored = await store.get_archive(request.archive_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"Archive {request.archive_id} not found")
    content = _read_content(request)
    try:
        restored = restore_archive(content, stored.archive)
    except ArchiveError as e:
        refs = [r.archive_ref for r in find_archive_references(content)]
        raise HTTPException(status_code=404, detail=f"{e}; references present: {refs}") from e

    written = bool(request.write and request.file_path)
    if written:
        Path(request.file_path).write_text(restored, encoding="utf-8")
        logger.info(f"Restored {stored.archive.section_name!r} into {request.file_path}")
    return RestoreResponse(content=restored, section_name=stored.archive.section_name, written=written)


@app.get("/rules")
async def list_rules(project_dir: str = "."):
    """Effective rules for a project: defaults overlaid with custom rules."""
    custom = await store.get_rules(_project_key(project_dir))
    custom_ids = {rule.id for rule in custom}
    return {
        "rules": [
            {**rule.model_dump(mode="json"), "custom": rule.id in custom_ids}
            for rule in merge_rules(custom, default_rules())
        ]
    }


@app.put("/rules")
async def put_rules(request: RulesRequest):
    """Validate and store custom rules (overriding defaults by id)."""
    try:
        rules = load_rules(request.rules)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    project = _project_key(request.project_dir)
    for rule in rules:
        await store.put_rule(project, rule)
    return {"stored": [rule.id for rule in rules]}


@app.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, project_dir: str = "."):
    deleted = await store.delete_rule(_project_key(project_dir), rule_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Custom rule {rule_id!r} not found")
    return {"deleted": rule_id}


def main():
    """Run the daemon."""
    reload_mode = "--reload" in sys.argv
    uvicorn.run(
        "contextopt.daemon:app",
        host=HOST,
        port=PORT,
        reload=reload_mode,
        log_level="info",
    )


if __name__ == "__main__":
    main()
