"""
User-facing outcome messages (Japanese / English).

"No evidence found", "found but not relevant", "upstream unavailable" and
"synthesis degraded" each read differently, so a user can tell whether to
rephrase the question or retry later.
"""

from medevidence.models import PubMedRecord, UserRecord, WebRecord

MESSAGES: dict[str, dict[str, str]] = {
    "ja": {
        "no_evidence": (
            "「{query}」に関する検索結果が見つかりませんでした。"
            "検索キーワードを変更してお試しください。\n\n"
            '検索に使用した英語キーワード: "{translated_query}"'
        ),
        "upstream_unavailable": (
            "\n\n文献データベースに接続できませんでした。"
            "しばらく時間をおいて再度お試しください。"
        ),
        "no_relevant": (
            "「{query}」に関する具体的な情報を含む論文が見つかりませんでした。\n\n"
            "検索で取得された論文は以下の通りですが、ご質問の内容と直接的な関連性が低いため、"
            "詳細な回答を提供することができません：\n\n{titles}\n\n"
            "より具体的な情報を得るためには、以下をお試しください：\n"
            "- 検索キーワードを変更する（例：より具体的な薬剤名、病態名など）\n"
            "- 英語での検索キーワードを使用する\n"
            "- 関連する専門的なガイドラインや教科書を参照する"
        ),
        "synthesis_degraded": (
            "【要約を生成できませんでした】\n\n取得された文献：\n{titles}\n\n"
            "現在システムの問題により詳細な要約を生成できません。"
            "上記の文献タイトルを参考に、直接PubMedで詳細をご確認ください。"
        ),
    },
    "en": {
        "no_evidence": (
            'No search results were found for "{query}". '
            "Please try different search keywords.\n\n"
            'English keywords used for the search: "{translated_query}"'
        ),
        "upstream_unavailable": (
            "\n\nThe literature database could not be reached. Please try again later."
        ),
        "no_relevant": (
            'No articles with specific information about "{query}" were found.\n\n'
            "The search returned the articles below, but they are not directly "
            "relevant to your question, so a detailed answer cannot be given:\n\n{titles}\n\n"
            "To get more specific information, try:\n"
            "- Changing the search keywords (e.g. a specific drug or condition name)\n"
            "- Searching with English keywords\n"
            "- Consulting the relevant clinical guidelines or textbooks"
        ),
        "synthesis_degraded": (
            "[Summary unavailable]\n\nRetrieved sources:\n{titles}\n\n"
            "A detailed summary could not be generated because of a system problem. "
            "Please review the sources above directly on PubMed."
        ),
    },
}


def message(key: str, language: str = "ja", **values: str) -> str:
    templates = MESSAGES.get(language, MESSAGES["ja"])
    return templates[key].format(**values)


def list_titles(
    literature: list[PubMedRecord],
    web: list[WebRecord] | None = None,
    user: list[UserRecord] | None = None,
) -> str:
    """Numbered title listing used by the fallback messages."""
    lines = []
    for i, r in enumerate(literature, 1):
        lines.append(f"{i}. {r.title} ({r.journal}, {r.publication_date or r.year}) [PMID: {r.pmid}]")
    for i, w in enumerate(web or [], 1):
        lines.append(f"- {w.title} [Web Source {i}]")
    for i, u in enumerate(user or [], 1):
        lines.append(f"- {u.title or u.source} [User Source {i}]")
    return "\n".join(lines)
