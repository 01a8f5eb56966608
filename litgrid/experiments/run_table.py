import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from litgrid.grid.manager import GridStateManager
from litgrid.grid.persistence import PersistenceAdapter
from litgrid.grid.state import PreconditionError
from litgrid.models.llm_client import Provider
from litgrid.utils.io import FileStore, write_json
from litgrid.utils.pdf_parser import ExtractionError

ROOT = Path(__file__).resolve().parents[2]
ENV_PATH = ROOT / ".env"
load_dotenv(ENV_PATH)

DATA_DIR = os.getenv("LITGRID_DATA_DIR", "data/store")
EXPORT_PATH = "data/exports/table.json"

# Where to find a key when the saved settings have none
KEY_ENV_VARS = {
    Provider.OPENAI: "OPENAI_API_KEY",
    Provider.GOOGLE: "GOOGLE_API_KEY",
}


def build_manager() -> GridStateManager:
    manager = GridStateManager(
        persistence=PersistenceAdapter(FileStore(DATA_DIR)),
        on_warning=lambda message: print(f" Warning: {message}"),
    ).initialize()

    env_var = KEY_ENV_VARS.get(manager.config.provider)
    if not manager.config.api_key and env_var and os.getenv(env_var):
        print(f"Using API key from {env_var}")
        manager.update_configuration(api_key=os.getenv(env_var))

    return manager


# Upload papers one after another, printing each finished row
async def upload_all(manager: GridStateManager, pdf_paths: List[str]):

    for path in pdf_paths:
        print(f"\nUploading: {path}")

        try:
            row_id = await manager.add_row(Path(path).name, Path(path).read_bytes())
        except PreconditionError as e:
            print(f" Cannot upload: {e}")
            return
        except ExtractionError as e:
            print(f" Skipped {path}: {e}")
            continue

        row = manager.get_row(row_id)
        if row is None:
            continue

        for column in manager.columns:
            print(f"  [{column.title}] {row.cells[column.id].display_text()}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(name)s:%(message)s")

    #parse args
    pdf_paths = sys.argv[1:]
    if not pdf_paths:
        print("Usage: python -m litgrid.experiments.run_table paper.pdf [more.pdf ...]")
        sys.exit(1)

    # Validate input files
    for path in pdf_paths:
        if not Path(path).exists():
            raise FileNotFoundError(f" PDF not found: {path}")

    manager = build_manager()
    print(f"Provider: {manager.config.provider.value}")
    print(f"Columns: {[c.title for c in manager.columns]}")

    asyncio.run(upload_all(manager, pdf_paths))

    #create json
    write_json(EXPORT_PATH, {"rows": manager.snapshot().to_records()})

    print(f"\nTable has {len(manager.rows)} row(s); saved to: {EXPORT_PATH}")


if __name__ == "__main__":
    main()
