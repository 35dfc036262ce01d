"""Prompt templates for every generation stage."""

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

from .models import BookType

LANGUAGE_INSTRUCTIONS: Dict[str, str] = {
    "en": "Please respond in English.",
    "zh": "请用中文回复。",
    "ja": "日本語で回答してください。",
    "fr": "Veuillez répondre en français.",
    "de": "Bitte antworten Sie auf Deutsch.",
    "es": "Por favor, responda en español.",
    "ru": "Пожалуйста, отвечайте на русском языке.",
}


def language_instruction(language: str) -> str:
    return LANGUAGE_INSTRUCTIONS.get(language, LANGUAGE_INSTRUCTIONS["en"])


def with_language(prompt: str, language: str) -> str:
    return f"{prompt}\n\n**{language_instruction(language)}**"


def _custom_block(custom_prompt: str) -> str:
    custom_prompt = (custom_prompt or "").strip()
    return f"\n\nAdditional requirements: {custom_prompt}" if custom_prompt else ""


# ---------------- Chapter summaries ----------------
FICTION_CHAPTER_SUMMARY = """Write a detailed summary of the following chapter.

Chapter title: {title}

Chapter content:
{content}

Summarize the chapter in natural, fluent language using this markdown layout:

## Chapter summary: {title}

### Plot development
[The main plot developments of this chapter]

### Characters and relationships
[Every character who appears and how they relate to each other]

### Turning points
[The key turning points of this chapter]"""

NON_FICTION_CHAPTER_SUMMARY = """Write a detailed summary of the following chapter of a non-fiction book.

Chapter title: {title}

Chapter content:
{content}

Summarize the chapter in natural, fluent language using this markdown layout:

## Chapter summary: {title}

### Main arguments
[The chapter's main arguments and the cases or findings that support them]

### Key concepts
[List and explain the key concepts of this chapter]

### Notable passages
[Quote a few insightful sentences from the original text as a list]

### Practical application
[Advice or applications for everyday life, tied closely to this chapter]"""


def chapter_summary_prompt(title: str, content: str, book_type: BookType,
                           custom_prompt: str = "", use_custom_only: bool = False) -> str:
    if use_custom_only and custom_prompt.strip():
        return f"{custom_prompt.strip()}\n\nChapter title: {title}\n\nChapter content:\n{content}"
    template = FICTION_CHAPTER_SUMMARY if book_type == BookType.FICTION else NON_FICTION_CHAPTER_SUMMARY
    return template.format(title=title, content=content) + _custom_block(custom_prompt)


# ---------------- Whole-book stages ----------------
def _summaries_block(summaries: Sequence[Tuple[str, str]]) -> str:
    return "\n\n".join(f"{title}:\n{summary or '(no summary)'}" for title, summary in summaries)


def connections_prompt(summaries: Sequence[Tuple[str, str]], book_type: BookType) -> str:
    block = _summaries_block(summaries)
    if book_type == BookType.FICTION:
        return f"""Below are the chapter summaries of a novel:

{block}

Analyse how these chapters connect: how the plot threads run through them, how characters develop across chapters, where foreshadowing pays off, and how the story's structure builds to its climax."""
    return f"""Below are the chapter summaries of a book:

{block}

Analyse the relationships between these chapters: how the ideas build on each other, which concepts recur, how the argument progresses from chapter to chapter, and what overall structure the author follows."""


def overall_summary_prompt(book_title: str, summaries: Sequence[Tuple[str, str]], book_type: BookType) -> str:
    chapter_info = "\n".join(
        f"Chapter {i}: {title}, content: {summary or '(no summary)'}"
        for i, (title, summary) in enumerate(summaries, start=1)
    )
    if book_type == BookType.FICTION:
        return f"""Chapter structure of the novel:
{chapter_info}

These are the chapters of the novel "{book_title}". Write a complete story report that lets readers quickly understand the whole story, covering:

## 1. Story overview
- The main plot, the setting in time and place, the central conflict and the ending

## 2. Main characters
- The core characters, their personalities, relationships and how they change

## 3. Themes and meaning
- The core themes, deeper meanings or symbols, and what the author wants to convey

## 4. Why read it
- Its literary qualities, which readers will enjoy it, and what it leaves them thinking about"""
    return f"""Book chapter structure:
{chapter_info}

These are the key points of the book "{book_title}". Write a comprehensive summary report that helps readers quickly grasp the essence of the whole book."""


def character_relationship_prompt(summaries: Sequence[Tuple[str, str]], book_type: BookType) -> str:
    subject = "novel" if book_type == BookType.FICTION else "book"
    return f"""Below are the chapter summaries of a {subject}:

{_summaries_block(summaries)}

Draw the relationships between the main characters (or, for non-fiction, the main people and organisations) as a mermaid graph.
Use `graph TD`, one node per character and a labelled edge per relationship. Return the diagram inside a ```mermaid code block."""


# ---------------- Mind maps ----------------
MIND_MAP_INSTRUCTIONS = """Turn the following content into a mind map.
The root topic names the subject; the first level holds the main themes; deeper levels hold the supporting points.
Keep every topic short and concrete.

"""


def chapter_mind_map_prompt(content: str, custom_prompt: str = "") -> str:
    return f"{MIND_MAP_INSTRUCTIONS}Chapter content:\n{content}{_custom_block(custom_prompt)}"


BOOK_SEPARATOR = "\n\n ------------- \n\n"


def book_mind_map_prompt(book_title: str, contents: List[str], custom_prompt: str = "") -> str:
    joined = BOOK_SEPARATOR.join(contents)
    return (
        f"{MIND_MAP_INSTRUCTIONS}Build one complete mind map for the whole book \"{book_title}\", "
        f"bringing the content of every chapter together.\n"
        f"Chapter content:\n{joined}{_custom_block(custom_prompt)}"
    )
