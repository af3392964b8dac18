"""Document ingestion for DocGraph.

Turns a local file or a URL into a ``Document`` plus its text, chunks it and
hands both to the graph persistence gateway. The format comes from the file
extension alone; each format has exactly one extraction handler.
"""

import asyncio
import hashlib
import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import yaml
from bs4 import BeautifulSoup
from PIL import Image
from pypdf import PdfReader

from config.crawl_config import CrawlConfig, crawl_config
from observability.metrics import record_ingestion
from .chunker import PAGE_SEPARATOR, PARAGRAPH_SEPARATOR, ContentChunker
from .errors import DuplicateDocumentError, GraphStoreError, IngestionError, UnsupportedFormatError
from .fetcher import PageFetcher
from .models import Document, DocumentFormat, IngestionResult
from .security import URLSecurityPolicy, default_policy

logger = logging.getLogger(__name__)

EXTENSION_FORMATS: Dict[str, DocumentFormat] = {
    'pdf': DocumentFormat.PDF,
    'md': DocumentFormat.MARKDOWN,
    'markdown': DocumentFormat.MARKDOWN,
    'html': DocumentFormat.HTML,
    'htm': DocumentFormat.HTML,
    'docx': DocumentFormat.WORD,
    'doc': DocumentFormat.WORD,
    'txt': DocumentFormat.PLAINTEXT,
    'swift': DocumentFormat.CODE,
    'py': DocumentFormat.CODE,
    'js': DocumentFormat.CODE,
    'java': DocumentFormat.CODE,
    'kt': DocumentFormat.CODE,
    'cpp': DocumentFormat.CODE,
    'c': DocumentFormat.CODE,
    'h': DocumentFormat.CODE,
    'yaml': DocumentFormat.OPENAPI,
    'yml': DocumentFormat.OPENAPI,
    'json': DocumentFormat.OPENAPI,
    'png': DocumentFormat.IMAGE,
    'jpg': DocumentFormat.IMAGE,
    'jpeg': DocumentFormat.IMAGE,
    'gif': DocumentFormat.IMAGE,
    'bmp': DocumentFormat.IMAGE,
    'tiff': DocumentFormat.IMAGE,
}

CODE_LANGUAGES = {
    'swift': 'swift',
    'py': 'python',
    'js': 'javascript',
    'java': 'java',
    'kt': 'kotlin',
    'cpp': 'cpp',
    'c': 'c',
    'h': 'c',
}

HTTP_METHODS = frozenset({'get', 'put', 'post', 'delete', 'options', 'head', 'patch', 'trace'})

FRONT_MATTER_RE = re.compile(r'\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)', re.DOTALL)
MD_TITLE_RE = re.compile(r'^#[ \t]+(.+?)[ \t#]*$', re.MULTILINE)

HTML_BLOCK_TAGS = ['h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'p', 'li', 'pre', 'blockquote', 'dt', 'dd', 'td', 'th']
HTML_STRIP_TAGS = ['script', 'style', 'noscript', 'nav', 'footer', 'svg', 'template']


@dataclass
class Extracted:
    """Output of a format handler."""
    text: str
    title: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    raw_html: Optional[str] = None


def is_url(source: str) -> bool:
    return urlparse(source).scheme in ('http', 'https')


def source_filename(source: str) -> str:
    """Last path segment of a file path or URL (the host for a bare URL)."""
    if is_url(source):
        parsed = urlparse(source)
        return PurePosixPath(unquote(parsed.path)).name or parsed.hostname or source
    return Path(source).name


def _fallback_title(source: str, name: str) -> str:
    # A bare URL is named after its host, which has no extension to strip
    if is_url(source) and name == urlparse(source).hostname:
        return name
    return PurePosixPath(name).stem or name


def _extension(source: str) -> str:
    if is_url(source):
        path = unquote(urlparse(source).path)
        if not path or path.endswith('/'):
            return ''
        return PurePosixPath(path).suffix.lower().lstrip('.')
    return Path(source).suffix.lower().lstrip('.')


def detect_format(source: str) -> DocumentFormat:
    """Map a source's extension to a format.

    A URL without an extension is a web page and maps to HTML.

    Raises:
        UnsupportedFormatError: For unrecognized or missing extensions
    """
    ext = _extension(source)
    if not ext:
        if is_url(source):
            return DocumentFormat.HTML
        raise UnsupportedFormatError("Unrecognized format: file has no extension", source)
    fmt = EXTENSION_FORMATS.get(ext)
    if fmt is None:
        raise UnsupportedFormatError(f"Unrecognized format '.{ext}'", source)
    return fmt


def _decode(data: bytes) -> str:
    return data.decode('utf-8-sig', errors='replace').replace('\r\n', '\n')


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    text = ' '.join(str(value).split())
    return text or None


def _split_tags(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        items = re.split(r'[,;]', value)
    elif isinstance(value, (list, tuple, set)):
        items = [str(item) for item in value]
    else:
        items = [str(value)]
    tags: List[str] = []
    for item in items:
        tag = item.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _extract_pdf(data: bytes, name: str) -> Extracted:
    reader = PdfReader(io.BytesIO(data))
    pages = [page.extract_text() or '' for page in reader.pages]
    meta = reader.metadata
    return Extracted(
        text=PAGE_SEPARATOR.join(pages),
        title=_clean(meta.title) if meta else None,
        author=_clean(meta.author) if meta else None,
        tags=_split_tags(meta.get('/Keywords')) if meta else [],
    )


def _extract_markdown(data: bytes, name: str) -> Extracted:
    text = _decode(data)
    meta: Dict = {}
    match = FRONT_MATTER_RE.match(text)
    if match:
        loaded = yaml.safe_load(match.group(1))
        if isinstance(loaded, dict):
            meta = loaded
        text = text[match.end():]

    title = _clean(meta.get('title'))
    if not title:
        heading = MD_TITLE_RE.search(text)
        title = _clean(heading.group(1)) if heading else None

    return Extracted(
        text=text,
        title=title,
        author=_clean(meta.get('author')),
        tags=_split_tags(meta.get('tags')),
    )


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find('meta', attrs=attrs)
    return _clean(tag.get('content')) if tag else None


def html_to_text(soup: BeautifulSoup) -> str:
    """Readable text of a page with headings rendered as markdown headings."""
    for tag in soup(HTML_STRIP_TAGS):
        tag.decompose()

    root = soup.body or soup
    blocks: List[str] = []
    for element in root.find_all(HTML_BLOCK_TAGS):
        if element.find_parent(HTML_BLOCK_TAGS):
            continue
        if element.name == 'pre':
            code = element.get_text().strip('\n')
            if code.strip():
                blocks.append(f"```\n{code}\n```")
            continue
        text = ' '.join(element.get_text(' ').split())
        if not text:
            continue
        if element.name[0] == 'h' and element.name[1:].isdigit():
            text = '#' * int(element.name[1:]) + ' ' + text
        elif element.name == 'li':
            text = '- ' + text
        blocks.append(text)

    if not blocks:
        return root.get_text('\n')
    return PARAGRAPH_SEPARATOR.join(blocks)


def _extract_html(data: bytes, name: str) -> Extracted:
    html = _decode(data)
    soup = BeautifulSoup(html, 'html.parser')

    title = _clean(soup.title.get_text()) if soup.title else None
    if not title:
        title = _meta_content(soup, property='og:title')

    return Extracted(
        title=title,
        author=_meta_content(soup, name='author'),
        tags=_split_tags(_meta_content(soup, name='keywords')),
        text=html_to_text(soup),
        raw_html=html,
    )


def _xml_text(soup: BeautifulSoup, tag_name: str) -> Optional[str]:
    tag = soup.find(tag_name)
    return _clean(tag.get_text()) if tag else None


def _extract_word(data: bytes, name: str) -> Extracted:
    if not zipfile.is_zipfile(io.BytesIO(data)):
        raise ValueError("only Office Open XML (.docx) Word files are supported, "
                         "legacy binary .doc files cannot be read")
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        body = archive.read('word/document.xml')
        core = archive.read('docProps/core.xml') if 'docProps/core.xml' in archive.namelist() else None

    document = BeautifulSoup(body, 'html.parser')
    paragraphs = []
    for paragraph in document.find_all('w:p'):
        text = ''.join(run.get_text() for run in paragraph.find_all('w:t'))
        if text.strip():
            paragraphs.append(text)

    extracted = Extracted(text=PARAGRAPH_SEPARATOR.join(paragraphs))
    if core:
        properties = BeautifulSoup(core, 'html.parser')
        extracted.title = _xml_text(properties, 'dc:title')
        extracted.author = _xml_text(properties, 'dc:creator')
        extracted.tags = _split_tags(_xml_text(properties, 'cp:keywords'))
    return extracted


def _extract_plaintext(data: bytes, name: str) -> Extracted:
    return Extracted(text=_decode(data))


def _extract_code(data: bytes, name: str) -> Extracted:
    language = CODE_LANGUAGES.get(PurePosixPath(name).suffix.lower().lstrip('.'))
    return Extracted(text=_decode(data), tags=[language] if language else [])


def _render_operation(path: str, method: str, operation: Dict) -> str:
    lines = [f"## {method.upper()} {path}"]
    for key in ('summary', 'description'):
        if operation.get(key):
            lines.append(str(operation[key]).strip())
    params = [p['name'] for p in operation.get('parameters') or []
              if isinstance(p, dict) and p.get('name')]
    if params:
        lines.append("Parameters: " + ", ".join(params))
    return PARAGRAPH_SEPARATOR.join(lines)


def _extract_openapi(data: bytes, name: str) -> Extracted:
    api = yaml.safe_load(_decode(data))
    if api is None:
        return Extracted(text='', tags=['openapi'])
    if not isinstance(api, dict):
        raise ValueError("expected a mapping at the top level")

    info = api.get('info') if isinstance(api.get('info'), dict) else {}
    contact = info.get('contact') if isinstance(info.get('contact'), dict) else {}
    version = api.get('openapi') or api.get('swagger')

    sections = []
    if info.get('title'):
        intro = f"# {info['title']}"
        if info.get('description'):
            intro += PARAGRAPH_SEPARATOR + str(info['description']).strip()
        sections.append(intro)

    paths = api.get('paths') if isinstance(api.get('paths'), dict) else {}
    for path, operations in paths.items():
        if not isinstance(operations, dict):
            continue
        for method, operation in operations.items():
            if str(method).lower() in HTTP_METHODS and isinstance(operation, dict):
                sections.append(_render_operation(str(path), str(method), operation))

    if not paths:
        sections.append(yaml.safe_dump(api, sort_keys=False, allow_unicode=True))

    return Extracted(
        text=PARAGRAPH_SEPARATOR.join(sections),
        title=_clean(info.get('title')),
        author=_clean(contact.get('name')),
        tags=['openapi'] + ([str(version)] if version else []),
    )


def _extract_image(data: bytes, name: str) -> Extracted:
    with Image.open(io.BytesIO(data)) as image:
        image_format = (image.format or '').lower()
        width, height = image.size
    tags = [image_format] if image_format else []
    tags.append(f"{width}x{height}")
    return Extracted(text='', tags=tags)


HANDLERS: Dict[DocumentFormat, Callable[[bytes, str], Extracted]] = {
    DocumentFormat.PDF: _extract_pdf,
    DocumentFormat.MARKDOWN: _extract_markdown,
    DocumentFormat.HTML: _extract_html,
    DocumentFormat.WORD: _extract_word,
    DocumentFormat.PLAINTEXT: _extract_plaintext,
    DocumentFormat.CODE: _extract_code,
    DocumentFormat.OPENAPI: _extract_openapi,
    DocumentFormat.IMAGE: _extract_image,
}


def extract(fmt: DocumentFormat, data: bytes, name: str, source: Optional[str] = None) -> Extracted:
    """Run the handler for ``fmt``.

    Raises:
        IngestionError: If the handler fails on malformed input
    """
    handler = HANDLERS[fmt]
    try:
        return handler(data, name)
    except Exception as e:
        raise IngestionError(f"Failed to extract {fmt.value} content: {e}", source or name, fmt.value) from e


class Ingestor:
    """Imports sources into the graph.

    Keeps a registry of imported sources so repeated imports of the same
    source are reported as duplicates unless configuration or ``reimport``
    says otherwise.
    """

    def __init__(self,
                 gateway,
                 fetcher: Optional[PageFetcher] = None,
                 chunker: Optional[ContentChunker] = None,
                 config: Optional[CrawlConfig] = None,
                 url_policy: Optional[URLSecurityPolicy] = None):
        self.gateway = gateway
        self.url_policy = url_policy or default_policy
        self.config = config or crawl_config
        self.chunker = chunker or ContentChunker()
        self._fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self._imported: Dict[str, Tuple[str, str]] = {}

    @property
    def fetcher(self) -> PageFetcher:
        if self._fetcher is None:
            self._fetcher = PageFetcher.from_settings(self.config.snapshot(), url_policy=self.url_policy)
        return self._fetcher

    async def close(self):
        if self._owns_fetcher and self._fetcher is not None:
            await self._fetcher.close()
            self._fetcher = None

    def find_existing(self, source: str) -> Optional[str]:
        """Id of the document last imported from ``source``, if any."""
        entry = self._imported.get(source)
        return entry[0] if entry else None

    async def _load(self, source: str) -> bytes:
        if is_url(source):
            is_safe, error = await asyncio.to_thread(self.url_policy.validate, source)
            if not is_safe:
                raise IngestionError(f"URL blocked: {error}", source)
            result = await self.fetcher.fetch(source)
            return result.body
        try:
            return await asyncio.to_thread(Path(source).read_bytes)
        except OSError as e:
            raise IngestionError(f"Cannot read file: {e}", source) from e

    def _resolve_duplicate(self, source: str, content_hash: str,
                           reimport: bool) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(duplicate_of, replaces)`` for a source about to be imported."""
        previous = self._imported.get(source)
        if previous is None or self.config.allow_duplicates:
            return None, None
        previous_id, previous_hash = previous
        if reimport:
            return None, previous_id
        if self.config.check_for_updates and previous_hash != content_hash:
            logger.info(f"Content changed for {source}, replacing document {previous_id}")
            return None, previous_id
        return previous_id, None

    async def process(self, source: str, reimport: bool = False) -> IngestionResult:
        """Fetch or read, extract, chunk and persist one source.

        A duplicate is returned with ``duplicate_of`` set and is not persisted.

        Raises:
            IngestionError: For format, fetch and extraction failures
            PersistenceError: If the document node could not be created
        """
        source = str(source)
        try:
            fmt = detect_format(source)
        except UnsupportedFormatError:
            record_ingestion("unknown", "unsupported")
            raise
        name = source_filename(source)
        try:
            data = await self._load(source)
            extracted = await asyncio.to_thread(extract, fmt, data, name, source)
        except IngestionError:
            record_ingestion(fmt.value, "failed")
            raise

        content_hash = hashlib.sha256(data).hexdigest()
        document = Document(
            source=source,
            format=fmt,
            original_filename=name,
            title=extracted.title or _fallback_title(source, name),
            author=extracted.author or "Unknown",
            tags=list(extracted.tags),
        )

        duplicate_of, replaces = self._resolve_duplicate(source, content_hash, reimport)
        if duplicate_of:
            record_ingestion(fmt.value, "duplicate")
            logger.info(f"Skipping duplicate {source} (already imported as {duplicate_of})")
            return IngestionResult(document=document, chunks=[], text=extracted.text,
                                   raw_html=extracted.raw_html, content_hash=content_hash,
                                   duplicate_of=duplicate_of)

        chunks = self.chunker.chunk(document, extracted.text)
        try:
            await self.gateway.persist(document, chunks)
        except Exception:
            record_ingestion(fmt.value, "failed")
            raise

        self._imported[source] = (document.id, content_hash)
        if replaces:
            try:
                await self.gateway.delete_document(replaces)
            except GraphStoreError as e:
                logger.warning(f"Imported new version of {source} but could not delete {replaces}: {e.message}")

        record_ingestion(fmt.value, "success")
        logger.info(f"Ingested {source} as {fmt.value} document {document.id} ({len(chunks)} chunks)")
        return IngestionResult(document=document, chunks=chunks, text=extracted.text,
                               raw_html=extracted.raw_html, content_hash=content_hash)

    async def ingest(self, source: str, reimport: bool = False) -> Document:
        """Import ``source`` and return its document.

        Raises:
            DuplicateDocumentError: If the source was already imported
        """
        result = await self.process(source, reimport=reimport)
        if result.is_duplicate:
            raise DuplicateDocumentError(source, result.duplicate_of, result.document.format.value)
        return result.document
