"""
Document materialization.

INSEE and INPI documents are PDFs fetched from the registries; BODACC only
exposes JSON, so a self-contained HTML report is generated from the
announcements instead. Artifacts land in a flat uploads directory as
``{TYPE}_{SIREN}_{timestamp}.{ext}`` and are reused while fresh.
"""

import html
import logging
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from bodacc_client import BodaccClient
from config import Settings
from errors import ErrorKind, RegistryError
from inpi_client import InpiClient
from insee_client import InseeClient
from models import Artifact, Company, DocumentType, is_siren, is_siret
from normalizer import bodacc_fields, extract_siren_from_registre

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"

EXTENSIONS = {
    DocumentType.INSEE: ("pdf", "application/pdf"),
    DocumentType.INPI: ("pdf", "application/pdf"),
    DocumentType.BODACC: ("html", "text/html; charset=utf-8"),
}


def is_pdf(data: Optional[bytes]) -> bool:
    return bool(data) and data[:4] == PDF_MAGIC


def artifact_filename(doc_type: DocumentType, siren: str, timestamp_ms: int) -> str:
    ext = EXTENSIONS[doc_type][0]
    return f"{doc_type.value.upper()}_{siren}_{timestamp_ms}.{ext}"


@dataclass
class Payload:
    doc_type: DocumentType
    siren: str
    content: bytes
    record_count: Optional[int] = None


@dataclass
class MaterializeResult:
    status: str
    artifact: Optional[Artifact] = None
    error: Optional[RegistryError] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": self.error.to_dict() if self.error else None,
        }


# ---------- BODACC HTML report ----------

REPORT_CSS = """
body { font-family: 'Segoe UI', Tahoma, sans-serif; line-height: 1.6; margin: 0; padding: 20px; background: #f5f5f5; color: #333; }
.header { text-align: center; background: #1a1a2e; color: white; padding: 2rem; border-radius: 10px; margin-bottom: 2rem; }
.header h1 { margin: 0; font-weight: 300; }
.summary, .record-card, .footer { background: white; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
.summary { padding: 1.5rem; margin-bottom: 2rem; }
.record-card { margin-bottom: 1.5rem; border-left: 4px solid #667eea; }
.record-header { background: #f8f9fa; padding: 1rem 1.5rem; display: flex; justify-content: space-between; }
.record-header h3 { margin: 0; font-size: 1.1rem; }
.record-date { background: #667eea; color: white; padding: 0.2rem 0.75rem; border-radius: 20px; font-size: 0.85rem; }
.record-content { padding: 1rem 1.5rem; }
.record-content p { margin: 0.3rem 0; }
.registre { font-family: monospace; color: #666; }
.footer { text-align: center; margin-top: 3rem; padding: 1.5rem; font-size: 0.85rem; color: #666; }
"""


def _esc(value: Any, default: str = "Non disponible") -> str:
    if value is None or str(value).strip() == "":
        return html.escape(default)
    return html.escape(str(value))


def _record_card(index: int, fields: Dict[str, Any]) -> str:
    location = ", ".join(
        str(p) for p in (fields.get("ville"), fields.get("cp"), fields.get("departement_nom_officiel")) if p
    )
    siren = extract_siren_from_registre(fields.get("registre"))
    return f"""
    <div class="record-card">
      <div class="record-header">
        <h3>Annonce #{index}</h3>
        <span class="record-date">{_esc(fields.get("dateparution"), "Date non disponible")}</span>
      </div>
      <div class="record-content">
        <p><strong>Entreprise :</strong> {_esc(fields.get("commercant"))}</p>
        <p><strong>SIREN :</strong> {_esc(siren)}</p>
        <p><strong>Type :</strong> {_esc(fields.get("familleavis_lib") or fields.get("familleavis"))}</p>
        <p><strong>Lieu :</strong> {_esc(location)}</p>
        <p><strong>Tribunal :</strong> {_esc(fields.get("tribunal"))}</p>
        <p><strong>N° d'annonce :</strong> {_esc(fields.get("numeroannonce"))}</p>
        <p class="registre"><strong>Registre :</strong> {_esc(fields.get("registre"))}</p>
      </div>
    </div>"""


def build_bodacc_report(
    siren: str,
    records: List[Dict[str, Any]],
    total_count: Optional[int] = None,
    company_name: Optional[str] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    """Render BODACC announcements as a standalone HTML document."""
    fields_list = [bodacc_fields(r) for r in records]
    name = company_name or next(
        (f.get("commercant") for f in fields_list if f.get("commercant")), f"Entreprise {siren}"
    )
    generated_at = generated_at or datetime.now()
    families = Counter(f.get("familleavis_lib") or f.get("familleavis") or "Autre" for f in fields_list)
    dates = sorted(f["dateparution"] for f in fields_list if f.get("dateparution"))

    summary_rows = "".join(
        f"<li>{html.escape(str(family))} : {count}</li>" for family, count in sorted(families.items())
    )
    period = f"{_esc(dates[0])} au {_esc(dates[-1])}" if dates else "Non disponible"
    cards = "".join(_record_card(i, f) for i, f in enumerate(fields_list, 1))

    return f"""<!DOCTYPE html>
<html lang="fr">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Rapport BODACC - {_esc(name)}</title>
  <style>{REPORT_CSS}</style>
</head>
<body>
  <div class="header">
    <h1>Rapport BODACC</h1>
    <p>{_esc(name)} &middot; SIREN {_esc(siren)}</p>
  </div>
  <div class="summary">
    <h2>Résumé</h2>
    <p><strong>Annonces incluses :</strong> {len(fields_list)}</p>
    <p><strong>Annonces publiées au total :</strong> {_esc(total_count if total_count is not None else len(fields_list))}</p>
    <p><strong>Période :</strong> {period}</p>
    <ul>{summary_rows}</ul>
  </div>
  {cards}
  <div class="footer">
    Généré le {html.escape(generated_at.strftime("%d/%m/%Y à %H:%M:%S"))} &middot;
    Source : BODACC (bodacc-datadila.opendatasoft.com)
  </div>
</body>
</html>
"""


# ---------- Materializer ----------


class DocumentMaterializer:
    def __init__(
        self,
        settings: Settings,
        insee: Optional[InseeClient] = None,
        inpi: Optional[InpiClient] = None,
        bodacc: Optional[BodaccClient] = None,
    ):
        self.settings = settings
        self.insee = insee or InseeClient(settings)
        self.inpi = inpi or InpiClient(settings)
        self.bodacc = bodacc or BodaccClient(settings)
        self.uploads = settings.uploads_path

    @staticmethod
    def parse_type(doc_type: Any) -> DocumentType:
        try:
            return DocumentType(str(doc_type).lower())
        except ValueError:
            raise RegistryError(ErrorKind.VALIDATION_ERROR, f"Type de document non supporté: {doc_type}")

    def find_cached(self, doc_type: DocumentType, siren: str) -> Optional[Artifact]:
        if not self.uploads.is_dir() or self.settings.document_cache_ttl <= 0:
            return None
        ext, content_type = EXTENSIONS[doc_type]
        candidates = []
        for path in self.uploads.glob(f"{doc_type.value.upper()}_{siren}_*.{ext}"):
            stamp = path.stem.rsplit("_", 1)[-1]
            if stamp.isdigit():
                candidates.append((int(stamp), path))
        if not candidates:
            return None

        _, path = max(candidates)
        age = time.time() - path.stat().st_mtime
        if age > self.settings.document_cache_ttl:
            return None
        logger.info("Cache hit for %s/%s: %s", doc_type.value, siren, path.name)
        return Artifact(
            path=str(path),
            filename=path.name,
            content_type=content_type,
            size=path.stat().st_size,
            doc_type=doc_type.value,
            siren=siren,
            cached=True,
        )

    def fetch(self, company: Company, doc_type: Any) -> Payload:
        """Download (or generate) the document bytes. Raises ``RegistryError``."""
        doc_type = self.parse_type(doc_type)
        siren = company.siren
        if not is_siren(siren):
            raise RegistryError(ErrorKind.VALIDATION_ERROR, f"SIREN invalide: {siren!r}")

        if doc_type == DocumentType.BODACC:
            data = self.bodacc.fetch_announcements(siren)
            records = data["records"]
            if not records:
                raise RegistryError(ErrorKind.NOT_FOUND, f"Aucune annonce BODACC pour {siren}", "bodacc")
            report = build_bodacc_report(siren, records, data.get("total_count"))
            return Payload(doc_type, siren, report.encode("utf-8"), record_count=len(records))

        if doc_type == DocumentType.INSEE:
            siret = company.siret if is_siret(company.siret) else self.insee.get_siege_siret(siren)
            content = self.insee.download_pdf(siret)
        else:
            content = self.inpi.download_pdf(siren)

        if not is_pdf(content):
            raise RegistryError(
                ErrorKind.INVALID_ARTIFACT,
                f"Le document {doc_type.value} reçu n'est pas un PDF",
                doc_type.value,
            )
        return Payload(doc_type, siren, content)

    def store(self, payload: Payload) -> Artifact:
        """Write a fetched document to the uploads directory."""
        self.uploads.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        path = self.uploads / artifact_filename(payload.doc_type, payload.siren, stamp)
        while path.exists():
            stamp += 1
            path = self.uploads / artifact_filename(payload.doc_type, payload.siren, stamp)
        path.write_bytes(payload.content)
        logger.info("Stored %s (%d bytes)", path.name, len(payload.content))
        return Artifact(
            path=str(path),
            filename=path.name,
            content_type=EXTENSIONS[payload.doc_type][1],
            size=len(payload.content),
            doc_type=payload.doc_type.value,
            siren=payload.siren,
            record_count=payload.record_count,
        )

    def materialize(self, company: Company, doc_type: Any, force: bool = False) -> MaterializeResult:
        try:
            parsed = self.parse_type(doc_type)
            if not is_siren(company.siren):
                raise RegistryError(ErrorKind.VALIDATION_ERROR, f"SIREN invalide: {company.siren!r}")
            if not force:
                cached = self.find_cached(parsed, company.siren)
                if cached:
                    return MaterializeResult("success", artifact=cached)
            artifact = self.store(self.fetch(company, parsed))
            return MaterializeResult("success", artifact=artifact)
        except RegistryError as exc:
            logger.warning("Materialization %s/%s failed: %s", doc_type, company.siren, exc.message)
            return MaterializeResult("failure", error=exc)
        except OSError as exc:
            logger.warning("Could not write %s/%s: %s", doc_type, company.siren, exc)
            return MaterializeResult("failure", error=RegistryError(ErrorKind.UPSTREAM_ERROR, str(exc)))
