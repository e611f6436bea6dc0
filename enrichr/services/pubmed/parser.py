from __future__ import annotations

import re
import xml.etree.ElementTree as ET

from enrichr.services.pubmed.types import PubMedSummary

_WHITESPACE_RE = re.compile(r"\s+")
_YEAR_RE = re.compile(r"\b(1[89]\d{2}|2\d{3})\b")


class PubMedParseError(ValueError):
    """E-utilities payload could not be parsed."""


def _parse_xml_root(payload: str) -> ET.Element:
    try:
        return ET.fromstring(payload)
    except ET.ParseError as exc:
        raise PubMedParseError(f"Invalid PubMed XML payload: {exc}") from exc


def _clean_text(elem: ET.Element | None) -> str:
    if elem is None:
        return ""
    return _WHITESPACE_RE.sub(" ", "".join(elem.itertext())).strip()


def parse_elink_result(payload: str) -> dict[str, list[str]]:
    """Map each source PMID of an eLink response to its linked PMIDs.

    Self-links and duplicates are dropped; a source without a LinkSetDb maps to
    an empty list.
    """
    root = _parse_xml_root(payload)
    links: dict[str, list[str]] = {}
    for link_set in root.findall("LinkSet"):
        source = _clean_text(link_set.find("IdList/Id"))
        if not source:
            continue
        linked: list[str] = []
        seen: set[str] = set()
        for id_elem in link_set.findall("LinkSetDb/Link/Id"):
            pmid = _clean_text(id_elem)
            if not pmid or pmid == source or pmid in seen:
                continue
            seen.add(pmid)
            linked.append(pmid)
        links.setdefault(source, []).extend(linked)
    return links


def parse_efetch_articles(payload: str) -> list[PubMedSummary]:
    root = _parse_xml_root(payload)
    summaries: list[PubMedSummary] = []
    for article_elem in root.findall("PubmedArticle"):
        summary = _parse_article(article_elem)
        if summary is not None:
            summaries.append(summary)
    return summaries


def _parse_article(article_elem: ET.Element) -> PubMedSummary | None:
    citation = article_elem.find("MedlineCitation")
    if citation is None:
        return None
    pmid = _clean_text(citation.find("PMID"))
    if not pmid:
        return None
    article = citation.find("Article")
    if article is None:
        return PubMedSummary(pmid=pmid, title="")
    journal = _clean_text(article.find("Journal/Title")) or None
    return PubMedSummary(
        pmid=pmid,
        title=_clean_text(article.find("ArticleTitle")),
        authors=_authors(article),
        year=_year(article),
        doi=_doi(article_elem),
        journal=journal,
    )


def _authors(article: ET.Element) -> str | None:
    names: list[str] = []
    for author in article.findall("AuthorList/Author"):
        collective = _clean_text(author.find("CollectiveName"))
        if collective:
            names.append(collective)
            continue
        name = f"{_clean_text(author.find('LastName'))} {_clean_text(author.find('Initials'))}".strip()
        if name:
            names.append(name)
    return ", ".join(names) or None


def _year(article: ET.Element) -> int | None:
    for path in (
        "Journal/JournalIssue/PubDate/Year",
        "ArticleDate/Year",
        "Journal/JournalIssue/PubDate/MedlineDate",
    ):
        match = _YEAR_RE.search(_clean_text(article.find(path)))
        if match:
            return int(match.group(1))
    return None


def _doi(article_elem: ET.Element) -> str | None:
    for id_elem in article_elem.findall("PubmedData/ArticleIdList/ArticleId"):
        if id_elem.get("IdType") == "doi":
            value = _clean_text(id_elem).lower()
            if value:
                return value
    return None
