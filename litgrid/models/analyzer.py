from typing import Dict, List

from litgrid.models.llm_client import NO_RESPONSE, Configuration, generate_text


# Fixed system instruction: answer language + plain text only
SYSTEM_INSTRUCTION = (
    "Always answer in {language}. Output plain text only. Never use Markdown "
    "formatting such as **bold**, *italics* or # headings."
)

# Prompt given to columns the user adds by title
COLUMN_PROMPT_TEMPLATE = (
    "Analyze the paper's {title}. Answer in the required language, plain text."
)

# Default table layout
DEFAULT_COLUMNS: List[Dict[str, str]] = [
    {
        "id": "citation",
        "title": "Citation",
        "prompt": (
            "Generate a standard APA-format citation for this paper. "
            "Answer in the required language, plain text only."
        ),
    },
    {
        "id": "researchObject",
        "title": "Research Object",
        "prompt": (
            "What is the main research object, dataset or core question of this paper? "
            "Answer in the required language, no Markdown, keep it brief."
        ),
    },
    {
        "id": "keyFindings",
        "title": "Key Findings",
        "prompt": (
            "Summarize the most important finding of this paper in one sentence. "
            "Answer in the required language, no Markdown."
        ),
    },
]


def system_instruction_for(cfg: Configuration) -> str:
    return SYSTEM_INSTRUCTION.format(language=cfg.response_language)


def default_prompt_for(title: str) -> str:
    return COLUMN_PROMPT_TEMPLATE.format(title=title.strip())


# Single call for one (paper, column) cell
async def analyze_cell(cfg: Configuration, task_prompt: str, paper_text: str) -> str:

    answer = await generate_text(
        cfg,
        system_instruction=system_instruction_for(cfg),
        task_prompt=task_prompt,
        context_text=paper_text,
    )

    return (answer or "").strip() or NO_RESPONSE
