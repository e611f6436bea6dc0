from __future__ import annotations

import httpx
import pytest

from enrichr.services.jobs.errors import PubMedError
from enrichr.services.pubmed.client import PubMedClient
from enrichr.services.pubmed.parser import PubMedParseError, parse_efetch_articles, parse_elink_result
from enrichr.services.pubmed.types import PubMedSummary

ELINK_REFS_XML = """<?xml version="1.0" ?>
<eLinkResult>
  <LinkSet>
    <DbFrom>pubmed</DbFrom>
    <IdList><Id>100</Id></IdList>
    <LinkSetDb>
      <DbTo>pubmed</DbTo>
      <LinkName>pubmed_pubmed_refs</LinkName>
      <Link><Id>201</Id></Link>
      <Link><Id>100</Id></Link>
      <Link><Id>202</Id></Link>
      <Link><Id>201</Id></Link>
    </LinkSetDb>
  </LinkSet>
  <LinkSet>
    <DbFrom>pubmed</DbFrom>
    <IdList><Id>101</Id></IdList>
  </LinkSet>
</eLinkResult>
"""

ELINK_CITEDIN_XML = """<eLinkResult>
  <LinkSet>
    <IdList><Id>101</Id></IdList>
    <LinkSetDb><Link><Id>301</Id></Link></LinkSetDb>
  </LinkSet>
</eLinkResult>
"""

EFETCH_XML = """<?xml version="1.0" ?>
<PubmedArticleSet>
  <PubmedArticle>
    <MedlineCitation>
      <PMID Version="1">201</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><Year>2019</Year></PubDate></JournalIssue>
          <Title>Nature Medicine</Title>
        </Journal>
        <ArticleTitle>Deep learning for <i>retinal</i> imaging.</ArticleTitle>
        <AuthorList>
          <Author><LastName>Smith</LastName><Initials>JA</Initials></Author>
          <Author><CollectiveName>Retina Consortium</CollectiveName></Author>
        </AuthorList>
      </Article>
    </MedlineCitation>
    <PubmedData>
      <ArticleIdList>
        <ArticleId IdType="pubmed">201</ArticleId>
        <ArticleId IdType="doi">10.1038/S41591-019-0001</ArticleId>
      </ArticleIdList>
    </PubmedData>
  </PubmedArticle>
  <PubmedArticle>
    <MedlineCitation>
      <PMID>202</PMID>
      <Article>
        <Journal>
          <JournalIssue><PubDate><MedlineDate>1998 Nov-Dec</MedlineDate></PubDate></JournalIssue>
        </Journal>
        <ArticleTitle>Untitled correspondence</ArticleTitle>
      </Article>
    </MedlineCitation>
  </PubmedArticle>
</PubmedArticleSet>
"""


def test_parse_elink_drops_self_links_and_duplicates() -> None:
    assert parse_elink_result(ELINK_REFS_XML) == {"100": ["201", "202"], "101": []}


def test_parse_efetch_extracts_summary_fields() -> None:
    first, second = parse_efetch_articles(EFETCH_XML)

    assert first == PubMedSummary(
        pmid="201",
        title="Deep learning for retinal imaging.",
        authors="Smith JA, Retina Consortium",
        year=2019,
        doi="10.1038/s41591-019-0001",
        journal="Nature Medicine",
    )
    assert first.first_author == "Smith JA"
    assert second.year == 1998
    assert second.doi is None
    assert second.first_author == "Unknown"


def test_invalid_xml_raises_parse_error() -> None:
    with pytest.raises(PubMedParseError):
        parse_elink_result("<eLinkResult><LinkSet>")


def _client(handler, *, api_key: str | None = None) -> tuple[PubMedClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return (
        PubMedClient(http_client=http_client, base_url="https://eutils.example/entrez/eutils/", api_key=api_key),
        http_client,
    )


@pytest.mark.asyncio
async def test_fetch_links_issues_refs_and_citedin_calls_aligned_to_input() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        linkname = request.url.params["linkname"]
        body = ELINK_REFS_XML if linkname == "pubmed_pubmed_refs" else ELINK_CITEDIN_XML
        return httpx.Response(200, text=body)

    client, http_client = _client(handler, api_key="ncbi-key")
    async with http_client:
        links = await client.fetch_links(["101", "100", "999"])

    assert [link.pmid for link in links] == ["101", "100", "999"]
    assert links[0].references == [] and links[0].cited_by == ["301"]
    assert links[1].references == ["201", "202"] and links[1].cited_by == []
    assert links[2].references == [] and links[2].cited_by == []
    assert len(requests) == 2
    assert requests[0].url.path == "/entrez/eutils/elink.fcgi"
    assert requests[0].url.params.get_list("id") == ["101", "100", "999"]
    assert requests[0].url.params["api_key"] == "ncbi-key"
    assert client.has_api_key


@pytest.mark.asyncio
async def test_fetch_summaries_returns_none_for_missing_records() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["id"] == "202,404,201"
        assert "api_key" not in request.url.params
        return httpx.Response(200, text=EFETCH_XML)

    client, http_client = _client(handler)
    async with http_client:
        summaries = await client.fetch_summaries(["202", "404", "201"])

    assert [summary.pmid if summary else None for summary in summaries] == ["202", None, "201"]


@pytest.mark.asyncio
async def test_http_failure_raises_pubmed_error_for_whole_batch() -> None:
    client, http_client = _client(lambda request: httpx.Response(503, text="busy"))
    async with http_client:
        with pytest.raises(PubMedError) as exc_info:
            await client.fetch_links(["1", "2"])
    assert exc_info.value.batch_size == 2
    assert "503" in str(exc_info.value)
