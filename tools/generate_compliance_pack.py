"""Generate a compliance pack for one record: report JSON, optional PDF, audit
trail for the record, and a sha256 manifest. Generating the report appends a
COMPLIANCE_REPORT_GENERATED entry like any other report request.

Usage: python tools/generate_compliance_pack.py <record_id> [out_dir]
"""
import asyncio, hashlib, json, sys, time
from pathlib import Path
from medaudit.config import Settings
from medaudit.service import RecordService
from medaudit.util import utc_rfc3339_ns

PRINCIPAL = "compliance-pack"


def sha256_file(p: Path) -> str:
    h = hashlib.sha256()
    with p.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def write_pdf(path: Path, report) -> bool:
    try:
        from reportlab.lib.pagesizes import letter
        from reportlab.pdfgen import canvas
    except ImportError:
        return False
    c = canvas.Canvas(str(path), pagesize=letter)
    y = letter[1] - 72
    c.setFont("Times-Roman", 14)
    c.drawString(72, y, f"Compliance Report - Record {report.record_id}")
    y -= 24
    c.setFont("Times-Roman", 11)
    lines = [
        f"Generated: {utc_rfc3339_ns(report.generated_timestamp)}",
        f"FDA status: {report.fda_status}",
        f"HIPAA status: {report.hipaa_status}",
        f"Audit trail complete: {report.audit_trail_complete}",
        f"Signature verified: {report.signature_verified}",
        f"Certification: {report.certification_level}",
    ] + [f"- {note}" for note in report.regulatory_notes]
    for line in lines:
        c.drawString(72, y, line)
        y -= 18
    c.showPage()
    c.save()
    return True


def generate_pack(record_id: int, out_dir: str = ".", service: RecordService = None) -> Path:
    service = service or RecordService.from_settings()
    report = asyncio.run(service.compliance_report(record_id, principal=PRINCIPAL))
    trail = service.list_audit_entries_for_record(record_id)

    outdir = Path(out_dir) / f"compliance_pack_{record_id}_{int(time.time())}"
    outdir.mkdir(parents=True, exist_ok=True)
    (outdir/"compliance_report.json").write_text(report.model_dump_json(indent=2), encoding="utf-8")
    (outdir/"audit_trail.json").write_text(
        json.dumps([e.model_dump(mode="json") for e in trail], indent=2), encoding="utf-8"
    )
    if not write_pdf(outdir/"Compliance_Report.pdf", report):
        (outdir/"pdf_skipped.txt").write_text("reportlab not installed", encoding="utf-8")

    manifest = {p.name: sha256_file(p) for p in sorted(outdir.iterdir()) if p.is_file()}
    (outdir/"manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return outdir


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python tools/generate_compliance_pack.py <record_id> [out_dir]")
        raise SystemExit(2)
    svc = RecordService.from_settings(Settings.from_env())
    try:
        print(str(generate_pack(int(sys.argv[1]), sys.argv[2] if len(sys.argv) > 2 else ".", svc)))
    finally:
        svc.close()
