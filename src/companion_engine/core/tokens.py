from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

_tokenizers: dict[str, object] = {}
DEFAULT_TOKENIZER_MODEL_ID = "zai-org/GLM-5"


def _get_tokenizer(model_id: str):
    """Return the cached tokenizer for ``model_id``, loading on first call."""
    if model_id in _tokenizers:
        return _tokenizers[model_id]
    tokenizer = None
    try:
        from transformers import AutoTokenizer

        tokenizer = AutoTokenizer.from_pretrained(model_id, trust_remote_code=True)
        logger.info("Tokenizer loaded from %s", model_id)
    except Exception as exc:
        logger.warning("Failed to load tokenizer %s: %s", model_id, exc)
    _tokenizers[model_id] = tokenizer
    return tokenizer


def count_tokens(text: str, model_id: str = DEFAULT_TOKENIZER_MODEL_ID) -> int:
    """Return the token count of ``text``.

    Falls back to ``len(text) // 4`` if the tokenizer cannot be loaded.
    """
    tok = _get_tokenizer(model_id)
    if tok is None:
        return len(text) // 4
    return len(tok.encode(text))
