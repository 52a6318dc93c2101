"""
Source record normalization and result merging.

Each source has one normalization function mapping its raw record shape to
the canonical ``Company``; ``normalize`` dispatches through ``NORMALIZERS``.
Records without a valid 9-digit SIREN are dropped here and never surfaced.
"""

import logging
import re
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from models import SOURCE_PRECEDENCE, Announcement, Company, Source, is_siren, is_siret

logger = logging.getLogger(__name__)

_MARKUP_CHARS = re.compile(r"[<>]")
_NINE_DIGITS = re.compile(r"(\d{9})")

# INSEE categorieJuridique codes (most common ones).
LEGAL_FORMS = {
    "1000": "Entrepreneur individuel",
    "5202": "SNC (Société en nom collectif)",
    "5306": "SCS (Société en commandite simple)",
    "5308": "SCA (Société en commandite par actions)",
    "5410": "SARL nationale",
    "5485": "Société d'exercice libéral à responsabilité limitée",
    "5498": "EURL (SARL unipersonnelle)",
    "5499": "SARL (Société à responsabilité limitée)",
    "5505": "SA à participation ouvrière à conseil d'administration",
    "5599": "SA à conseil d'administration",
    "5699": "SA à directoire",
    "5710": "SAS (Société par actions simplifiée)",
    "5720": "SASU (Société par actions simplifiée unipersonnelle)",
    "6540": "SCI (Société civile immobilière)",
    "9220": "Association déclarée",
    "9300": "Fondation",
}


# ---------- Query helpers ----------


def sanitize_query(query: str) -> str:
    """Strip markup characters and surrounding whitespace."""
    return _MARKUP_CHARS.sub("", query or "").strip()


def detect_kind(query: str) -> str:
    """Return ``"siren"`` for SIREN/SIRET or digit prefixes, else ``"name"``."""
    compact = (query or "").replace(" ", "").strip()
    if compact.isdigit():
        return "siren"
    return "name"


def siren_from_query(query: str) -> str:
    """Digits of a SIREN-like query, a SIRET being reduced to its SIREN."""
    compact = (query or "").replace(" ", "").strip()
    if is_siret(compact):
        return compact[:9]
    return compact


def legal_form_label(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    return LEGAL_FORMS.get(str(code), f"Catégorie juridique {code}")


def _clean_siren(value: Any) -> Optional[str]:
    siren = str(value or "").replace(" ", "").strip()
    return siren if is_siren(siren) else None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------- BODACC ----------


def extract_siren_from_registre(registre: Any) -> str:
    """Extract the SIREN from a BODACC ``registre`` field.

    The field is a comma-separated composite ("123 456 789,123456789"); the
    second component is authoritative when it is exactly 9 digits, otherwise
    the first 9-digit run anywhere in the field is used. Returns "" when
    nothing usable is found.
    """
    if not registre:
        return ""
    if isinstance(registre, (list, tuple)):
        text = ",".join(str(part) for part in registre)
    else:
        text = str(registre)

    parts = text.split(",")
    if len(parts) > 1:
        candidate = parts[1].strip()
        if is_siren(candidate):
            return candidate

    match = _NINE_DIGITS.search(text)
    return match.group(1) if match else ""


def bodacc_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap the OpenDataSoft v2 record envelope."""
    if "record" in record and isinstance(record["record"], dict):
        return record["record"].get("fields") or {}
    return record.get("fields") or record


def format_bodacc_address(fields: Dict[str, Any]) -> Optional[str]:
    parts = [fields.get("ville"), fields.get("cp"), fields.get("departement_nom_officiel")]
    parts = [str(p).strip() for p in parts if p and str(p).strip()]
    return ", ".join(parts) or None


def normalize_bodacc(records: Iterable[Dict[str, Any]]) -> List[Company]:
    """Group announcements by SIREN; the most recent one describes the company."""
    latest: Dict[str, Dict[str, Any]] = {}
    order: List[str] = []

    for record in records:
        fields = bodacc_fields(record)
        siren = extract_siren_from_registre(fields.get("registre"))
        if not siren:
            logger.debug("BODACC record without SIREN: %r", fields.get("registre"))
            continue
        if siren not in latest:
            order.append(siren)
            latest[siren] = fields
        elif (fields.get("dateparution") or "") > (latest[siren].get("dateparution") or ""):
            latest[siren] = fields

    companies = []
    for siren in order:
        fields = latest[siren]
        companies.append(
            Company(
                siren=siren,
                denomination=_text(fields.get("commercant")) or "Entreprise inconnue",
                source=Source.BODACC,
                address=format_bodacc_address(fields),
                last_announcement=Announcement(
                    type=_text(fields.get("familleavis_lib") or fields.get("familleavis")),
                    date=_text(fields.get("dateparution")),
                    court=_text(fields.get("tribunal")),
                ),
            )
        )
    return companies


# ---------- INSEE ----------


def insee_denomination(unite: Dict[str, Any]) -> str:
    for key in ("denominationUniteLegale", "sigleUniteLegale", "denominationUsuelle1UniteLegale"):
        value = _text(unite.get(key))
        if value:
            return value
    names = [
        _text(unite.get(k))
        for k in ("prenom1UniteLegale", "prenomUsuelUniteLegale", "nomUniteLegale", "nomUsageUniteLegale")
    ]
    names = [n for n in names if n]
    if names:
        # prenom1 and prenomUsuel are often identical
        return " ".join(dict.fromkeys(names))
    return f"[Données incomplètes] {unite.get('siren', '')}".strip()


def format_insee_address(adresse: Optional[Dict[str, Any]]) -> Optional[str]:
    if not adresse:
        return None
    parts = [
        adresse.get("numeroVoieEtablissement"),
        adresse.get("indiceRepetitionEtablissement"),
        adresse.get("typeVoieEtablissement"),
        adresse.get("libelleVoieEtablissement"),
        adresse.get("complementAdresseEtablissement"),
        adresse.get("codePostalEtablissement"),
        adresse.get("libelleCommuneEtablissement"),
        adresse.get("libellePaysEtrangerEtablissement"),
    ]
    text = " ".join(str(p).strip() for p in parts if p and str(p).strip())
    return text or None


def _current_period(item: Dict[str, Any], key: str) -> Dict[str, Any]:
    periods = item.get(key) or []
    for period in periods:
        if not period.get("dateFin"):
            return period
    return periods[0] if periods else {}


def normalize_insee(records: Iterable[Dict[str, Any]]) -> List[Company]:
    """Normalize INSEE establishments (``/siret``) or legal units (``/siren``)."""
    records = list(records)
    # Head offices first so that they win the per-SIREN dedup.
    records.sort(key=lambda r: not r.get("etablissementSiege", False))

    companies = []
    for record in records:
        if "uniteLegale" in record:
            unite = dict(record.get("uniteLegale") or {})
            etab_period = _current_period(record, "periodesEtablissement")
            siret = _text(record.get("siret"))
            siren = _clean_siren(unite.get("siren") or record.get("siren") or (siret or "")[:9])
            etat_etab = record.get("etatAdministratifEtablissement") or etab_period.get(
                "etatAdministratifEtablissement", "A"
            )
        else:
            unite = dict(record)
            siret = None
            siren = _clean_siren(unite.get("siren"))
            etat_etab = "A"

        # /siren responses keep current values in periodesUniteLegale.
        unite = {**_current_period(unite, "periodesUniteLegale"), **{k: v for k, v in unite.items() if v is not None}}
        if not siren:
            continue
        if siret is None and unite.get("nicSiegeUniteLegale"):
            siret = f"{siren}{unite['nicSiegeUniteLegale']}"

        code = _text(unite.get("categorieJuridiqueUniteLegale"))
        companies.append(
            Company(
                siren=siren,
                siret=siret if is_siret(siret) else None,
                denomination=insee_denomination(unite),
                source=Source.INSEE,
                legal_form=legal_form_label(code),
                legal_form_code=code,
                active=unite.get("etatAdministratifUniteLegale", "A") == "A" and etat_etab == "A",
                creation_date=_text(unite.get("dateCreationUniteLegale")),
                address=format_insee_address(record.get("adresseEtablissement")),
                activity_code=_text(unite.get("activitePrincipaleUniteLegale")),
                capital=_to_float(unite.get("capitalSocialUniteLegale")),
            )
        )
    return companies


# ---------- INPI / RNE ----------


def _rne_address(adresse: Dict[str, Any]) -> Optional[str]:
    parts = [
        adresse.get("numVoie"),
        adresse.get("typeVoie"),
        adresse.get("voie"),
        adresse.get("codePostal"),
        adresse.get("commune"),
    ]
    text = " ".join(str(p).strip() for p in parts if p and str(p).strip())
    return text or None


def normalize_inpi(records: Iterable[Dict[str, Any]]) -> List[Company]:
    companies = []
    for record in records:
        siren = _clean_siren(record.get("siren"))
        if not siren:
            continue
        content = (record.get("formality") or {}).get("content") or {}
        personne = content.get("personneMorale") or content.get("personnePhysique") or {}
        identite = personne.get("identite") or {}
        entreprise = identite.get("entreprise") or {}
        description = identite.get("description") or {}
        adresse = (personne.get("adresseEntreprise") or {}).get("adresse") or {}

        denomination = _text(entreprise.get("denomination"))
        if not denomination:
            individu = (identite.get("entrepreneur") or {}).get("descriptionPersonne") or {}
            names = [" ".join(individu.get("prenoms") or []), individu.get("nom")]
            denomination = " ".join(n for n in names if n) or f"Entreprise {siren}"

        code = _text(entreprise.get("formeJuridique"))
        companies.append(
            Company(
                siren=siren,
                denomination=denomination,
                source=Source.INPI,
                legal_form=legal_form_label(code),
                legal_form_code=code,
                creation_date=_text(entreprise.get("dateImmat") or (content.get("natureCreation") or {}).get("dateCreation")),
                address=_rne_address(adresse),
                activity_code=_text(entreprise.get("codeApe")),
                capital=_to_float(description.get("montantCapital")),
            )
        )
    return companies


# ---------- Local ----------


def normalize_local(rows: Iterable[Dict[str, Any]]) -> List[Company]:
    companies = []
    for row in rows:
        siren = _clean_siren(row.get("siren"))
        if not siren:
            continue
        code = _text(row.get("legal_form_code"))
        siret = _text(row.get("siret"))
        companies.append(
            Company(
                siren=siren,
                siret=siret if is_siret(siret) else None,
                denomination=_text(row.get("denomination")) or f"Entreprise {siren}",
                source=Source.LOCAL,
                legal_form=_text(row.get("legal_form")) or legal_form_label(code),
                legal_form_code=code,
                active=bool(row.get("active", True)),
                creation_date=_text(row.get("creation_date")),
                address=_text(row.get("address")),
                activity_code=_text(row.get("activity_code")),
                activity_label=_text(row.get("activity_label")),
                capital=_to_float(row.get("capital")),
            )
        )
    return companies


NORMALIZERS: Dict[Source, Callable[[Iterable[Dict[str, Any]]], List[Company]]] = {
    Source.LOCAL: normalize_local,
    Source.INSEE: normalize_insee,
    Source.BODACC: normalize_bodacc,
    Source.INPI: normalize_inpi,
}


def normalize(source: Source, records: Iterable[Dict[str, Any]]) -> List[Company]:
    return NORMALIZERS[Source(source)](records)


# ---------- Merge ----------


def merge_results(slots: Dict[Source, List[Company]], limit: Optional[int] = None) -> List[Company]:
    """Concatenate per-source results and deduplicate by SIREN.

    Sources are visited in ``SOURCE_PRECEDENCE`` order, so a local record
    wins over any remote one. The winner lists the other sources that
    returned the same SIREN in ``matched_sources`` and inherits a BODACC
    announcement if it has none. Inputs are never mutated.
    """
    merged: Dict[str, Company] = {}

    for source in SOURCE_PRECEDENCE:
        for company in slots.get(source, []) or []:
            if not is_siren(company.siren):
                continue
            current = merged.get(company.siren)
            if current is None:
                merged[company.siren] = replace(company, matched_sources=[])
                continue
            if source.value not in current.matched_sources and source != current.source:
                current.matched_sources.append(source.value)
            if current.last_announcement is None and company.last_announcement is not None:
                current.last_announcement = replace(company.last_announcement)

    results = list(merged.values())
    if limit is not None:
        results = results[:limit]
    return results
