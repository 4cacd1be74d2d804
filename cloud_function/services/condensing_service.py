from typing import Optional

from models.job import CondensationRequest, CondensingLevel
from services.exceptions import AIEmptyResponse, ChapterTextMissing
from services.logging_service import get_logger
from services.retry import RetryPolicy

LEVEL_INSTRUCTIONS = {
    CondensingLevel.LIGHT: """Condense this chapter by approximately 30% while preserving:
- All examples, code snippets and worked problems
- Detailed explanations of complex concepts
- Step-by-step instructions
- Important warnings and notes
- Key diagrams and illustrations (describe them in words)

Remove:
- Redundant explanations
- Excessively verbose descriptions
- Repetitive examples that make the same point""",

    CondensingLevel.MEDIUM: """Condense this chapter by approximately 50% while preserving:
- Core concepts and principles
- The most important examples only
- Key explanations and definitions
- Critical warnings and notes

Remove:
- Most detailed examples
- Verbose explanations
- Non-essential background information
- Redundant content""",

    CondensingLevel.HEAVY: """Condense this chapter by approximately 70%, extracting only:
- Core concepts and key principles
- Essential definitions and terminology
- Critical patterns and procedures
- Main takeaways and conclusions

Remove:
- All examples except the most crucial ones
- Detailed explanations
- Background information
- Verbose descriptions""",
}


class ChapterCondenser:
    """Rewrites one chapter's text at the requested compression level."""

    def __init__(self, ai_client, retry_policy: Optional[RetryPolicy] = None):
        self.ai = ai_client
        self.retry = retry_policy or RetryPolicy()

    def build_prompt(self, request: CondensationRequest) -> str:
        context_lines = [f"Book title: {request.book_title}"]
        if request.author:
            context_lines.append(f"Author: {request.author}")
        if request.genre:
            context_lines.append(f"Genre: {request.genre}")
        context_lines.append(f"Chapter: {request.chapter_title}")
        book_context = "\n".join(context_lines)

        return f"""{LEVEL_INSTRUCTIONS[request.level]}

Requirements:
- Maintain factual and technical accuracy at all times
- Preserve the logical flow and structure of the chapter
- Use clear, concise language in the same language as the original text
- Format the output as readable markdown (headings, bullet lists, fenced code blocks)
- Return only the condensed chapter, without commentary about what was changed

{book_context}

Chapter content to condense:

{request.text}
"""

    def condense(self, request: CondensationRequest) -> str:
        """
        Returns condensed markdown. The target ratio is guidance for the model,
        the result is not checked against it.
        """
        logger = get_logger()
        if not request.text.strip():
            raise ChapterTextMissing(f"Chapter '{request.chapter_title}' has no extractable text")

        condensed = self.retry.call(
            self._complete, request,
            description=f"Condensing '{request.chapter_title}'",
        )

        ratio = round((1 - len(condensed) / len(request.text)) * 100)
        logger.info("Chapter condensed", chapter_title=request.chapter_title,
                    level=request.level.value, original_length=len(request.text),
                    condensed_length=len(condensed), compression_ratio=ratio)
        return condensed

    def _complete(self, request: CondensationRequest) -> str:
        text = self.ai.complete(self.build_prompt(request), purpose="condensation").strip()
        # Some responses wrap the whole chapter in a markdown fence
        if text.startswith("```markdown") or text.startswith("```md"):
            text = text.split("\n", 1)[1] if "\n" in text else ""
            if text.rstrip().endswith("```"):
                text = text.rstrip()[:-3]
            text = text.strip()
        if not text:
            raise AIEmptyResponse("Condensed chapter text was empty")
        return text
