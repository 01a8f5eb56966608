import asyncio
import base64
import os

import streamlit as st
from dotenv import load_dotenv

from litgrid.grid.manager import GridStateManager
from litgrid.grid.persistence import PersistenceAdapter
from litgrid.grid.state import PreconditionError
from litgrid.models.llm_client import Provider
from litgrid.utils.io import FileStore
from litgrid.utils.pdf_parser import ExtractionError

load_dotenv()

DATA_DIR = os.getenv("LITGRID_DATA_DIR", "data/store")


# one manager per browser session, restored from disk on first run
def get_manager() -> GridStateManager:
    if "manager" not in st.session_state:
        st.session_state.warnings = []
        manager = GridStateManager(
            persistence=PersistenceAdapter(FileStore(DATA_DIR)),
            on_warning=st.session_state.warnings.append,
        )
        st.session_state.manager = manager.initialize()
    return st.session_state.manager


def thumbnail_bytes(data_url):
    if not data_url or "," not in data_url:
        return None
    return base64.b64decode(data_url.split(",", 1)[1])


st.set_page_config(page_title="AI Literature Table", layout="wide")

st.title("📑 AI Literature Table")
st.markdown("---")

manager = get_manager()
cfg = manager.config


# Settings
st.sidebar.header("⚙️ API Settings")

provider_values = [p.value for p in Provider]
provider = st.sidebar.selectbox(
    "Provider:",
    provider_values,
    index=provider_values.index(cfg.provider.value),
)
api_key = st.sidebar.text_input("API Key", value=cfg.api_key, type="password")
language = st.sidebar.text_input("Answer language", value=cfg.response_language)

patch = {"provider": provider, "api_key": api_key, "response_language": language}

if provider == Provider.OPENAI.value:
    patch["openai_base_url"] = st.sidebar.text_input("Base URL", value=cfg.openai_base_url)
    patch["openai_model"] = st.sidebar.text_input("Model", value=cfg.openai_model)
elif provider == Provider.GOOGLE.value:
    patch["google_model"] = st.sidebar.text_input("Gemini model", value=cfg.google_model)
else:
    patch["local_base_url"] = st.sidebar.text_input("Server URL", value=cfg.local_base_url)
    patch["local_model"] = st.sidebar.text_input("Model", value=cfg.local_model)

current = cfg.to_dict()
if any(current[k] != v for k, v in patch.items()):
    manager.update_configuration(**patch)

if st.sidebar.button("🗑️ Reset table"):
    manager.persistence.clear()
    del st.session_state["manager"]
    st.rerun()

for message in st.session_state.warnings:
    st.warning(message)
st.session_state.warnings.clear()

if Provider(provider).needs_api_key and not api_key:
    st.error("⚠️ Please enter your API Key first.")


# Upload
uploaded = st.file_uploader("➕ Upload a paper (PDF)", type="pdf")
table_slot = st.empty()
manager.on_change = lambda snap: table_slot.dataframe(snap.to_records(), width="stretch")

if uploaded is not None and st.button("Analyze"):
    try:
        with st.spinner("📄 Processing..."):
            asyncio.run(manager.add_row(uploaded.name, uploaded.getvalue()))
    except PreconditionError as e:
        st.warning(str(e))
    except ExtractionError as e:
        st.error(f"Error: {e}")

table_slot.dataframe(manager.snapshot().to_records(), width="stretch")


# Columns
st.markdown("---")
st.subheader("🧩 Columns")

col1, col2 = st.columns([3, 1])
with col1:
    new_title = st.text_input("New column title (e.g. 'Methods', 'Limitations')")
with col2:
    if st.button("Add column"):
        try:
            with st.spinner("Filling new column..."):
                asyncio.run(manager.add_column(new_title))
            st.rerun()
        except PreconditionError as e:
            st.warning(str(e))

for column in manager.columns:
    with st.expander(f"🔧 {column.title}"):
        title = st.text_input("Title", value=column.title, key=f"title_{column.id}")
        prompt = st.text_area("Prompt", value=column.prompt, key=f"prompt_{column.id}")

        if st.button("Save", key=f"save_{column.id}"):
            manager.rename_column(column.id, title)
            manager.update_column_prompt(column.id, prompt)
            st.rerun()
        if st.button("Delete column", key=f"delcol_{column.id}"):
            manager.delete_column(column.id)
            st.rerun()


# Rows
st.markdown("---")
st.subheader("📄 Papers")

if not manager.rows:
    st.info("No papers yet, upload a PDF to get started.")

for row in manager.rows:
    with st.expander(f"🔍 {row.file_name}"):
        image = thumbnail_bytes(row.thumbnail)
        if image:
            st.image(image, width=120)

        for column in manager.columns:
            cell = row.cells[column.id]
            st.markdown(f"**{column.title}**")
            st.text(cell.display_text())
            if row.extracted_text and st.button("↻ Regenerate", key=f"regen_{row.id}_{column.id}"):
                with st.spinner("Refreshing..."):
                    asyncio.run(manager.regenerate_cell(row.id, column.id))
                st.rerun()

        if st.button("Delete paper", key=f"delrow_{row.id}"):
            manager.delete_row(row.id)
            st.rerun()
