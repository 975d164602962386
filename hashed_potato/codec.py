"""
Conversion between the XML document format and plain Python trees.

A parsed tree is made of dicts, lists and strings:

    <table id="TBL-1234">3</table>   ->  {"table": {"_id": "TBL-1234", "#text": "3"}}
    <file_title>Bank</file_title>   ->  {"file_title": "Bank"}

Scalar content is never interpreted; numbers and booleans stay text until the
document model reads them.

Documents come from untrusted files, so parsing goes through defusedxml and
refuses DTDs and entity declarations. Building uses the standard ElementTree.
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from typing import Any, Dict, FrozenSet, Iterable, Iterator, Optional, Union

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET

from . import config
from .errors import ParseError

logger = logging.getLogger(__name__)

# Characters outside the XML 1.0 Char production
_ILLEGAL_XML_CHARS_RE = re.compile("[^\t\n\r\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


def format_scalar(value: Any) -> Optional[str]:
    """
    Render a leaf value the way it is written into markup.

    Raises:
        TypeError: If the value is not a scalar.
        ValueError: If the text contains a character XML cannot carry.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, str)):
        text = str(value)
        illegal = _ILLEGAL_XML_CHARS_RE.search(text)
        if illegal:
            raise ValueError(f"Character {illegal.group()!r} cannot be written to markup")
        return text
    raise TypeError(f"Cannot write value of type {type(value).__name__} as element text")


class MarkupCodec:
    """Parses and builds document markup.

    Args:
        always_array_paths: Dotted element paths that always parse to a list.
        attribute_prefix: Key prefix marking an attribute in the tree.
        text_key: Key of element text when the element also has attributes or children.
    """

    def __init__(self,
                 always_array_paths: Iterable[str] = config.ALWAYS_ARRAY_PATHS,
                 attribute_prefix: str = config.ATTRIBUTE_PREFIX,
                 text_key: str = config.TEXT_KEY):
        self.always_array_paths: FrozenSet[str] = frozenset(always_array_paths)
        self.attribute_prefix = attribute_prefix
        self.text_key = text_key

        # parent path -> tags of children that always form a list
        self._array_children: Dict[str, FrozenSet[str]] = {}
        grouped: Dict[str, set] = {}
        for path in self.always_array_paths:
            parent, _, tag = path.rpartition(".")
            grouped.setdefault(parent, set()).add(tag)
        for parent, tags in grouped.items():
            self._array_children[parent] = frozenset(tags)

    @classmethod
    def from_config(cls, engine_config: config.EngineConfig) -> "MarkupCodec":
        return cls(
            always_array_paths=engine_config.always_array_paths,
            attribute_prefix=engine_config.attribute_prefix,
            text_key=engine_config.text_key,
        )

    def parse(self, text: Union[str, bytes], root_path: str = "") -> Dict[str, Any]:
        """
        Parse markup into a tree.

        Args:
            text: Markup with a single root element.
            root_path: Dotted path of the parent of the root element. Used to
                parse a fragment (e.g. a decrypted <body>) with the
                always-array rules of its position in the full document.

        Returns:
            A single-key dict mapping the root tag to its converted content.

        Raises:
            ParseError: If the markup is not well formed or declares a DTD or entities.
        """
        if isinstance(text, (bytes, bytearray)):
            try:
                text = bytes(text).decode("utf-8")
            except UnicodeDecodeError as e:
                raise ParseError(f"Markup is not valid UTF-8: {e.reason}") from e
        if not isinstance(text, str):
            raise ParseError(f"Cannot parse markup of type {type(text).__name__}")

        try:
            element = SafeET.fromstring(text, forbid_dtd=True)
        except ET.ParseError as e:
            raise ParseError(f"Malformed markup: {e}") from e
        except DefusedXmlException as e:
            raise ParseError(f"Refused markup: {e}") from e

        path = f"{root_path}.{element.tag}" if root_path else element.tag
        return {element.tag: self._convert(element, path)}

    def build(self, tree: Mapping, pretty: bool = False) -> str:
        """
        Build markup from a tree.

        Args:
            tree: Mapping of top-level tag to content, as returned by parse().
            pretty: Indent nested elements with two spaces.

        Returns:
            The markup text, without an XML declaration. Carriage returns are
            written as character references so they survive parsing.

        Raises:
            TypeError: If a leaf is not a scalar.
            ValueError: If a leaf contains a character XML cannot carry.
        """
        if not isinstance(tree, Mapping):
            raise TypeError(f"Tree must be a mapping, got {type(tree).__name__}")

        parts = []
        for tag, value in tree.items():
            for element in self._to_elements(tag, value):
                if pretty:
                    ET.indent(element, space="  ")
                parts.append(ET.tostring(element, encoding="unicode").replace("\r", "&#13;"))
        return ("\n" if pretty else "").join(parts)

    def _convert(self, element: ET.Element, path: str) -> Union[str, Dict[str, Any]]:
        array_children = self._array_children.get(path, frozenset())
        children = list(element)

        if not children and not element.attrib and not array_children:
            return element.text or ""

        node: Dict[str, Any] = {}
        for name, value in element.attrib.items():
            node[self.attribute_prefix + name] = value

        for child in children:
            value = self._convert(child, f"{path}.{child.tag}")
            if child.tag in array_children:
                node.setdefault(child.tag, []).append(value)
            elif child.tag not in node:
                node[child.tag] = value
            elif isinstance(node[child.tag], list):
                node[child.tag].append(value)
            else:
                node[child.tag] = [node[child.tag], value]

        for tag in array_children:
            node.setdefault(tag, [])

        if children:
            # Mixed content: ignore the whitespace left by indentation
            pieces = [element.text or ""] + [child.tail or "" for child in children]
            text = "".join(pieces).strip()
        else:
            text = element.text or ""
        if text:
            node[self.text_key] = text
        return node

    def _to_elements(self, tag: str, value: Any) -> Iterator[ET.Element]:
        if isinstance(value, list):
            for item in value:
                yield self._to_element(tag, item)
        else:
            yield self._to_element(tag, value)

    def _to_element(self, tag: str, value: Any) -> ET.Element:
        element = ET.Element(tag)
        if not isinstance(value, Mapping):
            element.text = format_scalar(value)
            return element

        for key, child in value.items():
            if key == self.text_key:
                element.text = format_scalar(child)
            elif key.startswith(self.attribute_prefix):
                attribute = format_scalar(child)
                element.set(key[len(self.attribute_prefix):], attribute if attribute is not None else "")
            else:
                for sub in self._to_elements(key, child):
                    element.append(sub)
        return element
