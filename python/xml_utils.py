"""
Shared XML and logging-safety utilities

SECURITY: All XML parsing uses secure defaults to prevent XXE attacks.
"""

import logging
import re
from typing import Any, Optional

from lxml import etree

logger = logging.getLogger(__name__)


def get_secure_parser() -> etree.XMLParser:
    """Get a secure XML parser that prevents XXE attacks"""
    # disable DTD, entities, network access
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        dtd_validation=False,
        load_dtd=False,
        huge_tree=False
    )


def secure_fromstring(content: bytes) -> Any:
    """Securely parse an XML document held in memory

    Args:
        content: Raw XML bytes (e.g. an HTTP response body)

    Returns:
        Root element

    Raises:
        etree.XMLSyntaxError: If the document is malformed
    """
    return etree.fromstring(content, get_secure_parser())


def get_text_from_element(elem: Any, path: str) -> Optional[str]:
    """Safely get text content from an XML element

    Args:
        elem: Parent XML element
        path: XPath-style path to child element

    Returns:
        Stripped text content or None if element not found or empty
    """
    child = elem.find(path)
    if child is not None and child.text:
        return child.text.strip()
    return None


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized
