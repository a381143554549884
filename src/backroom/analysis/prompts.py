"""Prompt templates for the analysis oracles."""

FEATURE_SYSTEM_PROMPT = (
    "You analyze research dialogues between AI agents and extract their key "
    "technical terms, named entities and claims. Respond with JSON only."
)

FEATURE_USER_PROMPT = """Analyze the following content and extract key features.

Content:
{content}

Extract:
1. Technical Terms: specialized vocabulary and technical concepts
2. Named Entities: people, organizations, locations, artifacts
3. Key Claims: main arguments or assertions made

Rules:
- At most {cap} of each kind, the most relevant first.
- Do not list the participating agents ({participants}) as entities.
- Only include items that are truly relevant to the content.

Respond as JSON:
{{"technicalTerms": ["..."], "entities": ["..."], "claims": ["..."]}}"""

FEATURE_SCHEMA = {
    "type": "object",
    "properties": {
        "technicalTerms": {"type": "array", "items": {"type": "string"}},
        "entities": {"type": "array", "items": {"type": "string"}},
        "claims": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["technicalTerms", "entities", "claims"],
}

PAIR_SIMILARITY_SYSTEM_PROMPT = (
    "You judge how semantically similar two research conversations are from "
    "their extracted metadata. Respond with JSON only."
)

PAIR_SIMILARITY_USER_PROMPT = """Topic context: {topic}

# Conversation A
Title: {title_a}
- Entities: {entities_a}
- Claims: {claims_a}
- Technical Terms: {terms_a}

# Conversation B
Title: {title_b}
- Entities: {entities_b}
- Claims: {claims_b}
- Technical Terms: {terms_b}

Score the similarity by weighing:
1. Core topic alignment (40%): same subject matter, domain and context?
2. Claim complementarity (35%): do the claims support or expand each other?
3. Information overlap (25%): shared versus unique features.

Guidelines: 0.0-0.2 different topics; 0.3-0.4 same field, different focus;
0.5-0.6 related with meaningful overlap; 0.7-0.8 strong complementary
alignment; 0.9-1.0 nearly identical topic.

Respond as JSON: {{"similarity": <number between 0.0 and 1.0>}}"""

ENRICHMENT_SYSTEM_PROMPT = (
    "You judge whether new research conversations would meaningfully enhance "
    "an existing article. Respond with JSON only."
)

ENRICHMENT_USER_PROMPT = """Article:
Title: {article_title}
Content: {article_body}

New research conversations:
{cluster_content}

Give a single enrichment score from 0.0 (redundant or unrelated) to 1.0
(would significantly enhance the article). Value new evidence, deeper
explanation of briefly covered points and complementary scope; discount
redundant, tangential or contradictory material.

Respond as JSON: {{"similarity": <number between 0.0 and 1.0>}}"""

SIMILARITY_SCHEMA = {
    "type": "object",
    "properties": {"similarity": {"type": "number"}},
    "required": ["similarity"],
}

ARTICLE_SYSTEM_PROMPT = (
    "You are a research journalist who writes long-form articles from "
    "multi-agent research dialogues. Respond with JSON only."
)

CREATE_ARTICLE_USER_PROMPT = """Write a comprehensive article from these research conversations.

Conversations:
{conversations}

Key Entities: {entities}
Key Claims: {claims}
Technical Terms: {technical_terms}

Instructions:
- Synthesize every key point into one cohesive, logically organized article.
- Keep a formal yet engaging tone; no citations or references.
- Include technical detail while staying accessible, and close with the most
  significant implications.
- The title has fewer than 10 words and no special characters.
- The content is markdown.

Respond as JSON: {{"title": "...", "content": "..."}}"""

UPDATE_ARTICLE_USER_PROMPT = """Update the following article with new information from research conversations.

Existing Article:
Title: {article_title}
Content: {article_body}

New Research Conversations:
{conversations}

New Information:
- Technical Terms: {technical_terms}
- Entities: {entities}
- Claims: {claims}

Instructions:
- Integrate the new information while keeping the article's flow and tone.
- Expand or add sections as needed; no citations or references.
- Only change the title if clearly necessary.

Respond as JSON: {{"title": "...", "content": "..."}}"""

ARTICLE_SCHEMA = {
    "type": "object",
    "properties": {"title": {"type": "string"}, "content": {"type": "string"}},
    "required": ["title", "content"],
}
