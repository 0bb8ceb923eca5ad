from __future__ import annotations


WORD_EXTRACTION_PROMPT = """\
You are a Korean language expert. Given the following Korean dialogue from a \
story chapter, extract the most relevant words in dictionary form and provide \
their English translations.

Guidelines for word selection:
1. Focus on words that are:
   - Important for understanding the context
   - Commonly used in Korean
   - Useful for language learners
   - Not too basic (avoid words like 이, 그, 저)
2. Include a mix of nouns, verbs (dictionary form) and adjectives (dictionary form)
3. Exclude duplicates, extremely basic words, onomatopoeia and names
4. A word used with two different meanings is listed once per meaning

{output_format}
<dialogue>
{dialogue}
</dialogue>
"""

_ITEM_FIELDS = """\
- korean: the Korean {what}
- english: the English translation
- importanceScore: relevance to the chapter/story (0-100)
- senseKey: a short lowercase English gloss telling this meaning apart from \
other meanings of the same {what} (e.g. "pear" or "ship" for 배)
- chapterExample: the sentence from the dialogue where it appears
- globalExample: a short, natural example sentence of your own
"""

WORDS_OUTPUT_FORMAT = "Return a JSON array. Every element must have:\n" + _ITEM_FIELDS.format(
    what="word in dictionary form"
)

VOCABULARY_AND_GRAMMAR_OUTPUT_FORMAT = (
    "Also extract the grammar patterns (endings, particles, constructions such as "
    "-고 싶다 or -(으)니까) a learner needs to follow the dialogue.\n\n"
    'Return a JSON object with two arrays, "vocabulary" and "grammar". Every '
    "element of either array must have:\n" + _ITEM_FIELDS.format(what="word or grammar pattern")
)


def build_word_extraction_prompt(dialogue: str, *, with_grammar: bool = False) -> str:
    output_format = VOCABULARY_AND_GRAMMAR_OUTPUT_FORMAT if with_grammar else WORDS_OUTPUT_FORMAT
    return WORD_EXTRACTION_PROMPT.replace("{output_format}", output_format).replace(
        "{dialogue}", dialogue.strip()
    )
