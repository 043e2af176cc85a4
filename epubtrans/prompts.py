from __future__ import annotations

from typing import Optional


STYLE_GUIDE = """\
TRANSLATION STYLE GUIDE (Target: {target_language}):
1. Rephrase: natural, idiomatic {target_language}; faithful, fluent and elegant.
2. Split long sentences: break down long source clauses.
3. Tone: professional, insightful.
4. Vocabulary: use idioms of the target language where they read naturally.
5. No translationese: avoid calques and needless passive voice.

HEADING FORMATTING RULES:
1. Consistency: the table of contents must match the main body."""

BATCH_TRANSLATION_PROMPT = """\
TASK: Translate the content of each <node> into {target_language}.

CONTEXT: Book chapter "{chapter_title}".
Use glossary information when translating.
{glossary_block}
{style_guide}

RULES:
1. Return each node as: <node id="node_x">translated text</node>
2. Keep every node id exactly as given; never merge, split or drop nodes.
3. Keep inline tags (<a>, <strong>, <em>, <sup>, ...) and their attributes intact.
4. If you meet recurring terms that need a fixed translation and are not in the glossary,
   append them once at the end as: <glossary>{{"source term": "translation"}}</glossary>"""

ORDER_PLANNER_PROMPT = """\
You are a "Translation Strategy Agent". I have an EPUB book to translate.

GOAL: Filter and reorder the processing list based on these strict rules:

1. IDENTIFY TOC (Flag): find the chapter that serves as the "Table of Contents" or "Contents" page.
   If it exists, set "tocId" to its id, otherwise set "tocId" to null.
2. EXCLUDE: list in "exclude" the ids of "Table of Contents", "Contents", "Index", "Search Terms"
   or "Bibliography" chapters, and do NOT include them in "order".
3. MAIN CONTENT FIRST: core chapters (e.g. "Chapter 1", "Part I") come first; translating them
   first builds the context glossary.
4. FRONT/BACK MATTER LAST: "Preface", "Introduction", "Foreword", "Copyright", "Dedication",
   "About the Author", "Acknowledgments".

INPUT: a JSON list of chapters ({"id", "title"}).
OUTPUT: a JSON object only:
{"tocId": "id_of_toc_chapter_or_null", "order": ["chapter_01", "chapter_02"], "exclude": []}"""

HEADING_NORMALIZATION_PROMPT = """\
Role: XHTML copy editor. Task: standardize heading formats based on hierarchical semantics.

Core rules:
- Structural uniformity: identify the dominant numbering pattern of each heading level
  (e.g. "1.1", "1.1." or "Chapter I") and apply it to every heading of that level.
- Zero content edit: do NOT translate, rephrase or fix grammar. Preserve all words exactly.
- Whitespace: trim edges; collapse internal spaces to a single space; no line breaks or tabs.
- Consistency: markers (dots, brackets, dashes) must be identical across one level.
  Do NOT create new levels. Keep inline tags such as <a> and <sup> untouched.

INPUT: a JSON array of distinct heading strings, grouped by level (h1 first). The
  HEADING LEVELS list below gives the array positions of each level.
OUTPUT: a JSON object mapping EVERY input string to its standardized form, nothing else."""

SEED_GLOSSARY_SYSTEM_PROMPT = "You are a helpful assistant that outputs only JSON."

_SEED_GLOSSARY_USER_PROMPT = """\
I am translating an e-book into {target_language}. The candidate phrases below were picked by n-gram frequency.
Select the phrases likely to be translated inconsistently across chapters, especially uncommon usages
that occur frequently in this book, and suggest one translation for each.
Return only JSON, no commentary:
{{"glossary": [{{"term": "source phrase", "suggested": "translation", "reason": "why", "category": "kind"}}]}}

Candidates:
{payload}"""


def style_guide(target_language: str) -> str:
    return STYLE_GUIDE.format(target_language=target_language)


def batch_translation_prompt(
    target_language: str,
    chapter_title: str,
    glossary_block: str = "",
    custom_style_guide: Optional[str] = None,
) -> str:
    return BATCH_TRANSLATION_PROMPT.format(
        target_language=target_language,
        chapter_title=chapter_title or "Untitled",
        glossary_block=glossary_block,
        style_guide=custom_style_guide or style_guide(target_language),
    )


def seed_glossary_user_prompt(payload: str, target_language: str) -> str:
    return _SEED_GLOSSARY_USER_PROMPT.format(payload=payload, target_language=target_language)
