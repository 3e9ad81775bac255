"""Template token resolution for query templates."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import date, timedelta

# A placeholder never contains a brace, so on nesting the innermost one wins
# and unbalanced braces stay literal.
_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
_TODAY = re.compile(r"^Today([+-]\d+)?$")


@dataclass(frozen=True, slots=True)
class TokenContext:
    """Values substituted into ``{...}`` placeholders."""

    query_text: str = ""
    site_id: str = ""
    site_url: str = ""
    web_id: str = ""
    web_url: str = ""
    hub_site_url: str = ""
    user_display_name: str = ""
    user_email: str = ""
    list_id: str = ""
    today: date | None = None

    def with_query_text(self, query_text: str) -> "TokenContext":
        return replace(self, query_text=query_text)


def resolve_tokens(template: str, context: TokenContext) -> str:
    """Replace every recognised placeholder in ``template``.

    Supported: ``{searchTerms}``, ``{Site.ID}``, ``{Site.URL}``, ``{Web.ID}``,
    ``{Web.URL}``, ``{Hub}``, ``{User.Name}``, ``{User.Email}``,
    ``{PageContext.listId}`` and ``{Today}``/``{Today+N}``/``{Today-N}``.
    Unknown placeholders are left as written.
    """

    if not template:
        return ""

    token_map = {
        "searchTerms": context.query_text,
        "Site.ID": context.site_id,
        "Site.URL": context.site_url,
        "Web.ID": context.web_id,
        "Web.URL": context.web_url,
        "Hub": context.hub_site_url,
        "User.Name": context.user_display_name,
        "User.Email": context.user_email,
        "PageContext.listId": context.list_id,
    }

    def _substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in token_map:
            return token_map[key]

        today_match = _TODAY.match(key)
        if today_match is not None:
            today = context.today or date.today()
            offset = today_match.group(1)
            if offset is not None:
                try:
                    today = today + timedelta(days=int(offset))
                except OverflowError:
                    return match.group(0)
            return today.isoformat()

        return match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)
