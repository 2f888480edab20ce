"""
Invite handoff helpers.

A peer id is shared either as the raw opaque string or embedded as the
"join" query parameter of a link. parse_invite() accepts both forms.
"""

from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit


INVITE_QUERY_PARAM = "join"


def build_invite_link(base_url: str, peer_id: str) -> str:
    """Embed `peer_id` in `base_url`, keeping any existing query parameters."""
    if not peer_id:
        raise ValueError("peer_id is required")
    parts = urlsplit(base_url)
    query = parse_qs(parts.query, keep_blank_values=True)
    query[INVITE_QUERY_PARAM] = [peer_id]
    return urlunsplit((
        parts.scheme,
        parts.netloc,
        parts.path or "/",
        urlencode(query, doseq=True),
        parts.fragment,
    ))


def parse_invite(text: str) -> str:
    """
    Return the peer id from a raw id or an invite link.

    Raises ValueError when the input is empty or a link carries no id.
    """
    text = (text or "").strip()
    if not text:
        raise ValueError("invite is empty")

    parts = urlsplit(text)
    if not (parts.scheme and parts.netloc):
        return text

    values = parse_qs(parts.query).get(INVITE_QUERY_PARAM, [])
    peer_id = values[0].strip() if values else ""
    if not peer_id:
        raise ValueError(f"invite link has no '{INVITE_QUERY_PARAM}' parameter")
    return peer_id
