# sqlassist/processors/template_matcher.py
from typing import List, Optional, Tuple

from sqlassist.schemas import SqlTemplate


def score_template(query_lower: str, template: SqlTemplate) -> int:
    return sum(1 for kw in template.keywords if kw and kw.strip() and kw.strip().lower() in query_lower)


def match_template(query: str, templates: List[SqlTemplate], min_hits: int = 2) -> Optional[Tuple[SqlTemplate, int]]:
    """
    Pick the template with the most keyword substring hits in the lower-cased
    query. Ties go to the template seen first. The winner must reach min_hits,
    otherwise there is no match. Returns (template, score) or None.
    """
    q = (query or "").lower()
    best: Optional[SqlTemplate] = None
    best_score = 0
    for tpl in templates:
        score = score_template(q, tpl)
        if score > best_score:
            best, best_score = tpl, score
    if best is None or best_score < min_hits:
        return None
    return best, best_score
