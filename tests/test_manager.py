import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from litgrid.grid.manager import INTERRUPTED_MESSAGE, QUOTA_WARNING, GridStateManager
from litgrid.grid.persistence import STORAGE_KEY, PersistenceAdapter
from litgrid.grid.state import CellStatus, CellValue, PreconditionError
from litgrid.models.analyzer import DEFAULT_COLUMNS, default_prompt_for
from litgrid.models.llm_client import Configuration, GenerationError, Provider
from litgrid.utils.io import FileStore, MemoryStore
from litgrid.utils.pdf_parser import ExtractedDocument, ExtractionError

PAPER_TEXT = "Paper about X. Method: Y. Result: Z."
DEFAULT_IDS = [c["id"] for c in DEFAULT_COLUMNS]


class FakeExtractor:
    def __init__(self, text=PAPER_TEXT, error=None):
        self.text = text
        self.error = error
        self.calls = 0

    def __call__(self, data: bytes) -> ExtractedDocument:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ExtractedDocument(text=self.text, thumbnail="data:image/png;base64,AAAA")


class FakeGenerator:
    """Answers immediately unless paused; prompts containing a fail marker raise."""

    def __init__(self, fail_on=()):
        self.fail_on = fail_on
        self.calls = []
        self.paused = False
        self.gates = []

    async def __call__(self, cfg: Configuration, prompt: str, text: str) -> str:
        self.calls.append(prompt)
        call_no = len(self.calls)

        if self.paused:
            gate = asyncio.Event()
            self.gates.append(gate)
            await gate.wait()
        else:
            await asyncio.sleep(0)

        if any(marker in prompt for marker in self.fail_on):
            raise GenerationError("Upstream error 500", status_code=500)
        return f"answer #{call_no}"


class ManagerTestCase(unittest.IsolatedAsyncioTestCase):
    def make_manager(self, extractor=None, generator=None, store=None, provider=Provider.OPENAI, api_key="sk-test"):
        self.store = store if store is not None else MemoryStore()
        self.extractor = extractor or FakeExtractor()
        self.generator = generator or FakeGenerator()
        self.history = []
        self.warnings = []

        manager = GridStateManager(
            persistence=PersistenceAdapter(self.store),
            extractor=self.extractor,
            generator=self.generator,
            on_change=self.history.append,
            on_warning=self.warnings.append,
        ).initialize()
        manager.update_configuration(provider=provider, api_key=api_key)
        self.history.clear()
        return manager

    def assert_cells_match_columns(self, manager):
        column_ids = [c.id for c in manager.columns]
        for row in manager.rows:
            self.assertEqual(sorted(row.cells), sorted(column_ids))


class InitializeTests(ManagerTestCase):
    def test_defaults_when_store_empty(self) -> None:
        manager = GridStateManager(persistence=PersistenceAdapter(MemoryStore())).initialize()
        self.assertEqual([c.id for c in manager.columns], ["citation", "researchObject", "keyFindings"])
        self.assertEqual(manager.rows, [])
        self.assertEqual(manager.config, Configuration())

    def test_defaults_when_store_corrupt(self) -> None:
        store = MemoryStore()
        store.set_item(STORAGE_KEY, "{broken")
        manager = GridStateManager(persistence=PersistenceAdapter(store)).initialize()
        self.assertEqual([c.id for c in manager.columns], DEFAULT_IDS)

    def test_defaults_when_saved_file_undecodable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            (Path(td) / f"{STORAGE_KEY}.json").write_bytes(b"\xff\xfe\x00garbage")
            manager = GridStateManager(persistence=PersistenceAdapter(FileStore(td))).initialize()
            self.assertEqual([c.id for c in manager.columns], DEFAULT_IDS)

            manager.rename_column("citation", "Reference")
            self.assertEqual(PersistenceAdapter(FileStore(td)).load(), manager.snapshot())

    def test_defaults_without_persistence(self) -> None:
        manager = GridStateManager().initialize()
        self.assertEqual(len(manager.columns), 3)

    async def test_restores_previous_session(self) -> None:
        manager = self.make_manager()
        await manager.add_row("a.pdf", b"%PDF")
        before = manager.snapshot()

        restored = GridStateManager(persistence=PersistenceAdapter(self.store)).initialize()
        self.assertEqual(restored.snapshot(), before)

    def test_reconciles_cells_and_interrupted_calls(self) -> None:
        store = MemoryStore()
        data = {
            "config": Configuration(api_key="sk-test").to_dict(),
            "columns": [
                {"id": "citation", "title": "Citation", "prompt": "cite"},
                {"id": "col_9", "title": "Methods", "prompt": "methods"},
            ],
            "rows": [
                {
                    "id": "1",
                    "file_name": "a.pdf",
                    "extracted_text": PAPER_TEXT,
                    "cells": {
                        "citation": {"status": "generating", "value": ""},
                        "deleted_col": {"status": "ready", "value": "old"},
                    },
                }
            ],
        }
        store.set_item(STORAGE_KEY, json.dumps(data))

        manager = GridStateManager(persistence=PersistenceAdapter(store)).initialize()
        row = manager.rows[0]
        self.assertEqual(list(row.cells), ["citation", "col_9"])
        self.assertEqual(row.cells["citation"], CellValue.failed(INTERRUPTED_MESSAGE))
        self.assertEqual(row.cells["col_9"], CellValue.pending())
        # Reconciled state was written back
        self.assertEqual(PersistenceAdapter(store).load(), manager.snapshot())


class AddRowTests(ManagerTestCase):
    async def test_each_cell_goes_pending_generating_ready(self) -> None:
        manager = self.make_manager()
        row_id = await manager.add_row("paper.pdf", b"%PDF-1.7")

        for column_id in DEFAULT_IDS:
            statuses = []
            for snap in self.history:
                row = next((r for r in snap.rows if r.id == row_id), None)
                status = row.cells[column_id].status
                if not statuses or statuses[-1] != status:
                    statuses.append(status)
            self.assertEqual(statuses, [CellStatus.PENDING, CellStatus.GENERATING, CellStatus.READY])

        row = manager.get_row(row_id)
        self.assertEqual(row.extracted_text, PAPER_TEXT)
        self.assertEqual(row.file_name, "paper.pdf")
        self.assertTrue(all(cell.is_settled for cell in row.cells.values()))

    async def test_columns_generated_in_order_one_at_a_time(self) -> None:
        manager = self.make_manager()
        await manager.add_row("paper.pdf", b"%PDF")

        self.assertEqual(self.generator.calls, [c["prompt"] for c in DEFAULT_COLUMNS])
        for snap in self.history:
            generating = [
                cid for r in snap.rows for cid, cell in r.cells.items()
                if cell.status == CellStatus.GENERATING
            ]
            self.assertLessEqual(len(generating), 1)

    async def test_failed_column_does_not_affect_siblings(self) -> None:
        generator = FakeGenerator(fail_on=("research object",))
        manager = self.make_manager(generator=generator)
        row_id = await manager.add_row("paper.pdf", b"%PDF")

        cells = manager.get_row(row_id).cells
        self.assertEqual(cells["citation"], CellValue.ready("answer #1"))
        self.assertEqual(cells["researchObject"], CellValue.failed("Upstream error 500"))
        self.assertEqual(cells["keyFindings"], CellValue.ready("answer #3"))
        self.assertEqual(len(generator.calls), 3)

    async def test_unexpected_error_stays_in_cell(self) -> None:
        class Exploding(FakeGenerator):
            async def __call__(self, cfg, prompt, text):
                raise RuntimeError("socket closed")

        manager = self.make_manager(generator=Exploding())
        row_id = await manager.add_row("paper.pdf", b"%PDF")
        for cell in manager.get_row(row_id).cells.values():
            self.assertEqual(cell, CellValue.failed("socket closed"))

    async def test_missing_key_rejected_for_cloud_provider(self) -> None:
        manager = self.make_manager(api_key="")
        before = manager.snapshot()

        with self.assertRaises(PreconditionError):
            await manager.add_row("paper.pdf", b"%PDF")

        self.assertEqual(manager.rows, [])
        self.assertEqual(manager.snapshot(), before)
        self.assertEqual(self.extractor.calls, 0)
        self.assertEqual(self.history, [])

    async def test_missing_key_allowed_for_local_provider(self) -> None:
        manager = self.make_manager(provider=Provider.LOCAL, api_key="")
        row_id = await manager.add_row("paper.pdf", b"%PDF")
        self.assertEqual(len(manager.rows), 1)
        self.assertTrue(all(c.status == CellStatus.READY for c in manager.get_row(row_id).cells.values()))

    async def test_empty_file_rejected(self) -> None:
        manager = self.make_manager()
        with self.assertRaises(PreconditionError):
            await manager.add_row("paper.pdf", b"")
        self.assertEqual(manager.rows, [])

    async def test_extraction_failure_rolls_back_row(self) -> None:
        extractor = FakeExtractor(error=ExtractionError("Failed to process PDF file."))
        manager = self.make_manager(extractor=extractor)

        with self.assertRaises(ExtractionError):
            await manager.add_row("broken.pdf", b"garbage")

        self.assertEqual(manager.rows, [])
        self.assertEqual(self.generator.calls, [])
        self.assertEqual(PersistenceAdapter(self.store).load().rows, [])

    async def test_row_ids_unique(self) -> None:
        manager = self.make_manager()
        manager._clock = lambda: 1700000000.0
        first = await manager.add_row("a.pdf", b"%PDF")
        second = await manager.add_row("b.pdf", b"%PDF")
        self.assertEqual(first, "1700000000000")
        self.assertEqual(second, "1700000000001")

    async def test_quota_exceeded_keeps_memory_state(self) -> None:
        manager = self.make_manager(store=MemoryStore(max_bytes=64))
        row_id = await manager.add_row("paper.pdf", b"%PDF")

        self.assertIn(QUOTA_WARNING, self.warnings)
        self.assertEqual(len(manager.rows), 1)
        self.assertTrue(all(c.status == CellStatus.READY for c in manager.get_row(row_id).cells.values()))


class ColumnTests(ManagerTestCase):
    async def test_add_column_generates_once_for_row_with_text(self) -> None:
        manager = self.make_manager()
        row_id = await manager.add_row("paper.pdf", b"%PDF")
        before = dict(manager.get_row(row_id).cells)
        self.generator.calls.clear()

        column = await manager.add_column("limitations")

        self.assertEqual(self.generator.calls, [default_prompt_for("limitations")])
        self.assertEqual(column.prompt, "Analyze the paper's limitations. Answer in the required language, plain text.")
        self.assertEqual(manager.columns[-1], column)

        cells = manager.get_row(row_id).cells
        self.assertEqual(cells[column.id].status, CellStatus.READY)
        for column_id, cell in before.items():
            self.assertEqual(cells[column_id], cell)

    async def test_add_column_leaves_rows_without_text_pending(self) -> None:
        manager = self.make_manager(extractor=FakeExtractor(text=""))
        row_id = await manager.add_row("scan.pdf", b"%PDF")
        self.assertEqual(self.generator.calls, [])

        column = await manager.add_column("methods")
        self.assertEqual(manager.get_row(row_id).cells[column.id], CellValue.pending())
        self.assertEqual(self.generator.calls, [])

    async def test_add_column_fills_rows_concurrently(self) -> None:
        manager = self.make_manager()
        await manager.add_row("a.pdf", b"%PDF")
        await manager.add_row("b.pdf", b"%PDF")
        self.generator.paused = True

        task = asyncio.create_task(manager.add_column("methods"))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        # Both rows are waiting on the model at the same time
        self.assertEqual(len(self.generator.gates), 2)
        for gate in reversed(self.generator.gates):
            gate.set()
        column = await task

        for row in manager.rows:
            self.assertEqual(row.cells[column.id].status, CellStatus.READY)

    async def test_blank_title_rejected(self) -> None:
        manager = self.make_manager()
        with self.assertRaises(PreconditionError):
            await manager.add_column("   ")
        self.assertEqual(len(manager.columns), 3)

    async def test_column_ids_unique(self) -> None:
        manager = self.make_manager()
        manager._clock = lambda: 5.0
        first = await manager.add_column("a")
        second = await manager.add_column("b")
        self.assertEqual((first.id, second.id), ("col_5000", "col_5001"))

    async def test_delete_column_only_drops_its_cells(self) -> None:
        manager = self.make_manager()
        await manager.add_row("a.pdf", b"%PDF")
        await manager.add_row("b.pdf", b"%PDF")
        before = {r.id: dict(r.cells) for r in manager.rows}

        manager.delete_column("researchObject")
        manager.delete_column("researchObject")

        self.assertEqual([c.id for c in manager.columns], ["citation", "keyFindings"])
        for row in manager.rows:
            expected = {k: v for k, v in before[row.id].items() if k != "researchObject"}
            self.assertEqual(row.cells, expected)

    async def test_cells_always_match_columns(self) -> None:
        manager = self.make_manager()
        await manager.add_column("methods")
        self.assert_cells_match_columns(manager)
        await manager.add_row("a.pdf", b"%PDF")
        self.assert_cells_match_columns(manager)
        limitations = await manager.add_column("limitations")
        await manager.add_row("b.pdf", b"%PDF")
        self.assert_cells_match_columns(manager)
        manager.delete_column("citation")
        manager.delete_column(limitations.id)
        self.assert_cells_match_columns(manager)
        await manager.add_column("dataset")
        self.assert_cells_match_columns(manager)

    async def test_prompt_and_title_edits_do_not_generate(self) -> None:
        manager = self.make_manager()
        await manager.add_row("a.pdf", b"%PDF")
        self.generator.calls.clear()

        manager.update_column_prompt("citation", "MLA citation please.")
        manager.rename_column("citation", "Reference")
        manager.update_column_prompt("missing", "ignored")

        self.assertEqual(manager.get_column("citation").prompt, "MLA citation please.")
        self.assertEqual(manager.get_column("citation").title, "Reference")
        self.assertEqual(self.generator.calls, [])


class RegenerateTests(ManagerTestCase):
    async def test_noop_without_text_or_target(self) -> None:
        manager = self.make_manager(extractor=FakeExtractor(text=""))
        row_id = await manager.add_row("scan.pdf", b"%PDF")
        before = manager.snapshot()
        self.history.clear()

        await manager.regenerate_cell(row_id, "citation")
        await manager.regenerate_cell("nope", "citation")
        await manager.regenerate_cell(row_id, "nope")

        self.assertEqual(manager.snapshot(), before)
        self.assertEqual(self.history, [])
        self.assertEqual(self.generator.calls, [])

    async def test_regenerate_replaces_failed_cell(self) -> None:
        generator = FakeGenerator(fail_on=("APA",))
        manager = self.make_manager(generator=generator)
        row_id = await manager.add_row("a.pdf", b"%PDF")
        self.assertEqual(manager.get_row(row_id).cells["citation"].status, CellStatus.FAILED)

        generator.fail_on = ()
        await manager.regenerate_cell(row_id, "citation")
        self.assertEqual(manager.get_row(row_id).cells["citation"], CellValue.ready("answer #4"))

    async def test_latest_call_wins_regardless_of_completion_order(self) -> None:
        manager = self.make_manager()
        row_id = await manager.add_row("a.pdf", b"%PDF")
        self.generator.paused = True

        first = asyncio.create_task(manager.regenerate_cell(row_id, "citation"))
        await asyncio.sleep(0)
        second = asyncio.create_task(manager.regenerate_cell(row_id, "citation"))
        await asyncio.sleep(0)
        self.assertEqual(len(self.generator.gates), 2)

        self.generator.gates[1].set()
        await second
        self.assertEqual(manager.get_row(row_id).cells["citation"], CellValue.ready("answer #5"))

        self.generator.gates[0].set()
        await first
        self.assertEqual(manager.get_row(row_id).cells["citation"], CellValue.ready("answer #5"))

    async def test_reused_column_id_ignores_old_call(self) -> None:
        manager = self.make_manager()
        manager._clock = lambda: 1.0
        row_id = await manager.add_row("a.pdf", b"%PDF")
        self.generator.paused = True

        old = asyncio.create_task(manager.add_column("Methods"))
        while len(self.generator.gates) < 1:
            await asyncio.sleep(0)
        manager.delete_column("col_1000")

        new = asyncio.create_task(manager.add_column("Limitations"))
        while len(self.generator.gates) < 2:
            await asyncio.sleep(0)
        self.assertEqual(manager.columns[-1].id, "col_1000")

        self.generator.gates[0].set()
        await old
        self.assertEqual(manager.get_row(row_id).cells["col_1000"], CellValue.generating())

        self.generator.gates[1].set()
        column = await new
        self.assertEqual(column.title, "Limitations")
        self.assertEqual(manager.get_row(row_id).cells["col_1000"], CellValue.ready("answer #5"))

    async def test_row_deleted_while_generating(self) -> None:
        manager = self.make_manager()
        row_id = await manager.add_row("a.pdf", b"%PDF")
        self.generator.paused = True

        task = asyncio.create_task(manager.regenerate_cell(row_id, "citation"))
        await asyncio.sleep(0)
        manager.delete_row(row_id)
        manager.delete_row(row_id)
        self.generator.gates[0].set()
        await task

        self.assertEqual(manager.rows, [])

    async def test_column_deleted_while_generating(self) -> None:
        manager = self.make_manager()
        row_id = await manager.add_row("a.pdf", b"%PDF")
        self.generator.paused = True

        task = asyncio.create_task(manager.regenerate_cell(row_id, "keyFindings"))
        await asyncio.sleep(0)
        manager.delete_column("keyFindings")
        self.generator.gates[0].set()
        await task

        self.assertNotIn("keyFindings", manager.get_row(row_id).cells)
        self.assert_cells_match_columns(manager)


class ConfigurationTests(ManagerTestCase):
    def test_update_configuration(self) -> None:
        manager = self.make_manager()
        cfg = manager.update_configuration(provider="google", google_model="gemini-2.0-flash")
        self.assertIs(cfg.provider, Provider.GOOGLE)
        self.assertEqual(cfg.api_key, "sk-test")
        self.assertEqual(PersistenceAdapter(self.store).load().config, cfg)

    def test_unknown_field_rejected(self) -> None:
        manager = self.make_manager()
        with self.assertRaises(PreconditionError):
            manager.update_configuration(apiKey="x")

    async def test_config_threaded_into_calls(self) -> None:
        seen = []

        class Recording(FakeGenerator):
            async def __call__(self, cfg, prompt, text):
                seen.append((cfg.provider, cfg.api_key, text))
                return "ok"

        manager = self.make_manager(generator=Recording())
        await manager.add_row("a.pdf", b"%PDF")
        self.assertEqual(seen, [(Provider.OPENAI, "sk-test", PAPER_TEXT)] * 3)


if __name__ == "__main__":
    unittest.main()
