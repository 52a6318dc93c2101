"""
Streamlit app for searching French company registries and downloading
their documents.

Searches run on the local table, INSEE SIRENE and BODACC at once (INPI/RNE
when enabled); documents picked from the results go to a cart and are
downloaded in one batch.
"""
import sqlite3
import streamlit as st
import pandas as pd
from io import BytesIO
from pathlib import Path

from batch_download import BatchDownloadManager, CartStore, SessionCartBackend
from config import Settings
from documents import DocumentMaterializer
from errors import RegistryError, ValidationError
from local_lookup import init_db, save_company
from models import CartItem, DocumentType, DownloadState, Source
from search import SearchOrchestrator

st.set_page_config(
    page_title="Recherche Entreprises",
    page_icon="🏢",
    layout="wide",
    initial_sidebar_state="collapsed"
)

st.markdown("""
<style>
    .block-container { padding-top: 2rem; max-width: 1100px; }
    .app-header { padding: 1.2rem 0 0.8rem 0; border-bottom: 2px solid #e0e0e0; margin-bottom: 1.5rem; }
    .app-header h1 { font-size: 1.6rem; font-weight: 600; margin: 0; color: #1a1a2e; }
    .app-header p  { font-size: 0.9rem; color: #666; margin: 0.3rem 0 0 0; }
</style>
""", unsafe_allow_html=True)

st.markdown("""
<div class="app-header">
    <h1>🏢 Recherche d'Entreprises</h1>
    <p>Base locale, INSEE SIRENE, BODACC &amp; INPI / RNE</p>
</div>
""", unsafe_allow_html=True)

SETTINGS = Settings.from_env()

SOURCE_LABELS = {
    "all": "Toutes les sources",
    "local": "Base locale",
    "insee": "INSEE SIRENE",
    "bodacc": "BODACC",
    "inpi": "INPI / RNE",
}

DOCUMENT_LABELS = {
    DocumentType.INSEE: "Avis de situation INSEE (PDF)",
    DocumentType.INPI: "Extrait RNE INPI (PDF)",
    DocumentType.BODACC: "Rapport des annonces BODACC (HTML)",
}

STATE_LABELS = {
    DownloadState.QUEUED: "en attente",
    DownloadState.DOWNLOADING: "téléchargement",
    DownloadState.UPLOADING: "enregistrement",
    DownloadState.COMPLETED: "terminé",
    DownloadState.ERROR: "erreur",
}


def get_orchestrator():
    if "orchestrator" not in st.session_state:
        st.session_state["orchestrator"] = SearchOrchestrator(SETTINGS)
    return st.session_state["orchestrator"]


def get_cart():
    if "cart" not in st.session_state:
        st.session_state["cart"] = CartStore.with_backend(SessionCartBackend(st.session_state)).init()
    return st.session_state["cart"]


def _format_etat(active):
    return "Active" if active else "Cessée"


def _format_currency(value):
    if isinstance(value, (int, float)):
        return f"{value:,.0f} €"
    return "N/A"


def companies_to_rows(companies):
    """Flatten merged companies into display rows."""
    rows = []
    for c in companies:
        announcement = c.last_announcement
        rows.append({
            "SIREN": c.siren,
            "SIRET": c.siret or "N/A",
            "Dénomination": c.denomination,
            "Forme juridique": c.legal_form or "N/A",
            "État administratif": _format_etat(c.active),
            "Date de création": c.creation_date or "N/A",
            "Adresse": c.address or "N/A",
            "Activité": " - ".join(p for p in (c.activity_code, c.activity_label) if p) or "N/A",
            "Capital": _format_currency(c.capital),
            "Source": c.source.value,
            "Autres sources": ", ".join(c.matched_sources) or "-",
            "Dernière annonce": (
                f"{announcement.type or ''} ({announcement.date or '?'})".strip()
                if announcement else "-"
            ),
        })
    return rows


def available_documents(settings=SETTINGS):
    """Document types that can be requested with the current configuration."""
    return {
        DocumentType.INSEE: settings.insee_configured,
        DocumentType.INPI: settings.inpi_configured,
        DocumentType.BODACC: True,
    }


def cart_item_for(company, doc_type, settings=SETTINGS):
    doc_type = DocumentType(doc_type)
    return CartItem(
        id=f"{doc_type.value}-{company.siren}",
        type=doc_type.value,
        siren=company.siren,
        siret=company.siret,
        name=company.denomination,
        description=DOCUMENT_LABELS[doc_type],
        available=available_documents(settings)[doc_type],
    )


def create_download_button(df, file_format, key_suffix=""):
    """Create download button for CSV or XLSX."""
    if file_format == "CSV":
        csv = df.to_csv(index=False).encode('utf-8')
        st.download_button(
            label="📥 Télécharger CSV",
            data=csv,
            file_name="entreprises.csv",
            mime="text/csv",
            key=f"dl_csv_{key_suffix}",
        )
    elif file_format == "XLSX":
        output = BytesIO()
        with pd.ExcelWriter(output, engine='openpyxl') as writer:
            df.to_excel(writer, index=False, sheet_name='Entreprises')
        output.seek(0)
        st.download_button(
            label="📥 Télécharger XLSX",
            data=output,
            file_name="entreprises.xlsx",
            mime="application/vnd.openxmlformats-officedocument."
                 "spreadsheetml.sheet",
            key=f"dl_xlsx_{key_suffix}",
        )


def display_errors(errors):
    for err in errors:
        label = SOURCE_LABELS.get(err.get("source"), err.get("source"))
        st.warning(f"⚠️ {label} : {err.get('type')} - {err.get('message')}")


def display_results(envelope, cart):
    """Results table, export buttons and cart controls."""
    display_errors(envelope.errors)

    if not envelope.results:
        st.info("Aucun résultat.")
        return

    counts = envelope.sources
    cols = st.columns(len(counts) + 1)
    cols[0].metric("Résultats", len(envelope.results))
    for col, (source, count) in zip(cols[1:], counts.items()):
        col.metric(SOURCE_LABELS.get(source, source), count)

    df = pd.DataFrame(companies_to_rows(envelope.results))
    st.dataframe(df, use_container_width=True, height=min(400, 60 + len(df) * 35))

    col_a, col_b = st.columns(2)
    with col_a:
        create_download_button(df, "CSV", "results")
    with col_b:
        create_download_button(df, "XLSX", "results")

    st.markdown("#### Ajouter des documents au panier")
    available = available_documents()
    for company in envelope.results:
        with st.expander(f"{company.denomination} ({company.siren})"):
            for doc_type, label in DOCUMENT_LABELS.items():
                item = cart_item_for(company, doc_type)
                if cart.contains(item.id):
                    st.caption(f"✅ {label} : dans le panier")
                elif not available[doc_type]:
                    st.caption(f"🚫 {label} : source non configurée")
                elif st.button(f"➕ {label}", key=f"add_{item.id}"):
                    cart.add(item)
                    st.success(f"{label} ajouté au panier")
            if company.source != Source.LOCAL and st.button(
                "💾 Enregistrer dans la base locale", key=f"save_{company.siren}"
            ):
                save_to_local(company)


def prepare_local_db(settings=SETTINGS):
    """Create the local companies table so that a fresh install searches cleanly."""
    try:
        init_db(settings.db_path)
        return True
    except (sqlite3.Error, OSError) as e:
        st.warning(f"⚠️ Base locale indisponible ({settings.db_path}) : {e}")
        return False


def save_to_local(company, settings=SETTINGS):
    """Copy a registry result into the local table."""
    try:
        save_company(settings.db_path, company)
    except RegistryError as e:
        st.error(f"❌ {e.message}")
        return False
    st.success(f"✅ {company.denomination} enregistrée dans la base locale")
    return True


def run_cart_download(cart, settings=SETTINGS):
    """Download every cart document, one after the other."""
    items = list(cart.items)
    bar = st.progress(0.0)

    def on_progress(record):
        cart.update_progress(record)
        done = sum(p.progress for p in cart.progress.values()) / (100.0 * len(items))
        bar.progress(min(done, 1.0), text=f"{record.item_id} : {STATE_LABELS[record.state]}")

    manager = BatchDownloadManager(settings, DocumentMaterializer(settings), on_progress=on_progress)
    try:
        result = manager.run_batch(items)
    except ValidationError as e:
        st.error(f"❌ {e.message}")
        return None

    bar.progress(1.0, text="Terminé")
    for entry in result.successful:
        cart.remove(entry["item"]["id"])
    return result


def display_batch_result(result):
    st.markdown(f"**{len(result.successful)}** document(s) récupéré(s), **{len(result.failed)}** échec(s)")
    for entry in result.successful:
        artifact = entry["artifact"]
        path = Path(artifact["path"])
        if path.exists():
            st.download_button(
                label=f"📄 {artifact['filename']}",
                data=path.read_bytes(),
                file_name=artifact["filename"],
                mime=artifact["content_type"],
                key=f"dl_{artifact['filename']}",
            )
    for entry in result.failed:
        item, error = entry["item"], entry["error"]
        st.error(f"❌ {item['name'] or item['siren']} ({item['type']}) : {error['type']} - {error['message']}")


# ── Main UI ──────────────────────────────────────────

prepare_local_db()
cart = get_cart()

tab_search, tab_cart = st.tabs(["🔍 Recherche", f"🛒 Panier ({len(cart)})"])

with tab_search:
    st.markdown("#### Recherche")
    st.caption("Nom d'entreprise, SIREN ou SIRET (3 caractères minimum)")

    query = st.text_input("Entreprise", placeholder="carrefour, 652014051 ...")
    source = st.selectbox("Source", list(SOURCE_LABELS), format_func=lambda s: SOURCE_LABELS[s])
    active_only = st.checkbox("Entreprises actives uniquement", value=False)

    if st.button("🔍 Rechercher", type="primary", key="btn_search"):
        try:
            with st.spinner("Recherche en cours..."):
                st.session_state["envelope"] = get_orchestrator().search(query, source=source, active_only=active_only)
        except ValidationError as e:
            st.session_state.pop("envelope", None)
            st.warning(e.message)

    if st.session_state.get("envelope") is not None:
        display_results(st.session_state["envelope"], cart)

with tab_cart:
    st.markdown("#### Panier de documents")
    if not len(cart):
        st.info("Le panier est vide.")
    else:
        st.dataframe(
            pd.DataFrame([
                {"Document": i.description, "Entreprise": i.name, "SIREN": i.siren, "Ajouté le": i.added_at}
                for i in cart.items
            ]),
            use_container_width=True,
        )
        col_a, col_b = st.columns(2)
        with col_a:
            if st.button("⬇️ Tout télécharger", type="primary", key="btn_batch"):
                st.session_state["last_batch"] = run_cart_download(cart)
        with col_b:
            if st.button("🗑️ Vider le panier", key="btn_clear"):
                cart.clear()

    if st.session_state.get("last_batch") is not None:
        display_batch_result(st.session_state["last_batch"])

with st.sidebar:
    st.markdown("### ℹ️ Sources")
    for name, enabled in SETTINGS.enabled.items():
        st.caption(f"{'✅' if enabled else '⏸️'} {SOURCE_LABELS[name]}")
    if not SETTINGS.insee_configured:
        st.info("💡 Identifiants INSEE absents : recherche et avis de situation INSEE indisponibles.")
    if not SETTINGS.inpi_configured:
        st.info("💡 INPI_API_TOKEN absent : extraits RNE indisponibles.")
