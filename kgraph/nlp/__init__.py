"""Natural language processing components."""

from .entity_dictionary import EntityDictionary, EntityMatch
from .entity_learning import EntityLearner
from .entity_normalization import EntityNormalizer
from .hybrid_extraction import HybridExtractionPreprocessor
from .response_parser import parse_extraction_response
from .similarity import levenshtein_distance, phrase_similarity, similarity

__all__ = [
	"EntityDictionary",
	"EntityMatch",
	"EntityLearner",
	"EntityNormalizer",
	"HybridExtractionPreprocessor",
	"levenshtein_distance",
	"parse_extraction_response",
	"phrase_similarity",
	"similarity",
]
