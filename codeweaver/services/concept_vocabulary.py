"""
Concept Vocabulary

Maps learning concepts onto related terms used by the content validator's
coverage check. Loaded from YAML (bundled config/concepts.yaml by default):

    concepts:
      loops: [loop, repeat, again, ...]
    aliases:
      iteration: loops

Usage:
    vocabulary = ConceptVocabulary.load()
    vocabulary.related_terms("loops")   # ["loops", "loop", "repeat", ...]
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Iterable, Union

import yaml

from codeweaver.services.text_processing import normalize_text, contains_any_term

logger = logging.getLogger(__name__)

DEFAULT_VOCABULARY_PATH = Path(__file__).resolve().parent.parent / "config" / "concepts.yaml"


class ConceptVocabulary:
    """Concept -> related terms lookup with alias resolution"""

    def __init__(
        self,
        concepts: Dict[str, Iterable[str]],
        aliases: Optional[Dict[str, str]] = None
    ):
        self._concepts: Dict[str, List[str]] = {}
        for concept, terms in (concepts or {}).items():
            key = normalize_text(concept)
            self._concepts[key] = [normalize_text(t) for t in (terms or []) if normalize_text(t)]

        self._aliases: Dict[str, str] = {
            normalize_text(alias): normalize_text(target)
            for alias, target in (aliases or {}).items()
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ConceptVocabulary":
        return cls(data.get("concepts") or {}, data.get("aliases") or {})

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "ConceptVocabulary":
        """
        Load the vocabulary from a YAML file.

        Args:
            path: YAML file path (None = bundled config/concepts.yaml)
        """
        vocab_path = Path(path) if path else DEFAULT_VOCABULARY_PATH
        with open(vocab_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        vocabulary = cls.from_dict(data)
        logger.info(f"Loaded concept vocabulary: {len(vocabulary._concepts)} concepts from {vocab_path.name}")
        return vocabulary

    def canonical(self, concept: str) -> str:
        """Resolve an alias (e.g. 'iteration') to its canonical concept ('loops')"""
        key = normalize_text(concept)
        return self._aliases.get(key, key)

    def related_terms(self, concept: str) -> List[str]:
        """
        Terms that count as covering a concept.

        Always includes the concept name itself, so unknown concepts are
        covered only by literal mention.
        """
        key = normalize_text(concept)
        canonical = self.canonical(concept)

        terms = [key]
        if canonical != key:
            terms.append(canonical)
        for term in self._concepts.get(canonical, []):
            if term not in terms:
                terms.append(term)
        return terms

    def is_covered(self, concept: str, normalized_text: str) -> bool:
        return contains_any_term(normalized_text, self.related_terms(concept))

    def detect_concepts(self, normalized_text: str) -> List[str]:
        """All known concepts mentioned in the text, in vocabulary order"""
        return [c for c in self._concepts if self.is_covered(c, normalized_text)]

    @property
    def concepts(self) -> List[str]:
        return list(self._concepts)
