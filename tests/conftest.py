import os

import pytest

XMP_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<x:xmpmeta xmlns:x="adobe:ns:meta/">
 <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
  <rdf:Description rdf:about=""
    xmlns:xmp="http://ns.adobe.com/xap/1.0/"
    xmlns:digiKam="http://www.digikam.org/ns/1.0/"
    xmlns:dc="http://purl.org/dc/elements/1.1/"
    {modify_attr}>
   <digiKam:TagsList>
    <rdf:Seq>
{tags}
    </rdf:Seq>
   </digiKam:TagsList>
{title}
  </rdf:Description>
 </rdf:RDF>
</x:xmpmeta>
"""


def make_xmp(tags=(), title=None, modify_date=None) -> bytes:
    modify_attr = f'xmp:ModifyDate="{modify_date}"' if modify_date else ""
    tag_xml = "\n".join(f"     <rdf:li>{t}</rdf:li>" for t in tags)
    title_xml = ""
    if title is not None:
        items = title if isinstance(title, (list, tuple)) else [title]
        lis = "".join(f'<rdf:li xml:lang="x-default">{t}</rdf:li>' for t in items)
        title_xml = f"   <dc:title><rdf:Alt>{lis}</rdf:Alt></dc:title>"
    return XMP_TEMPLATE.format(modify_attr=modify_attr, tags=tag_xml, title=title_xml).encode("utf-8")


@pytest.fixture
def xmp():
    return make_xmp


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "photos"
    root.mkdir()
    return root


@pytest.fixture
def make_config(tmp_path, media_root):
    def _make(**overrides):
        from imagefind_mcp.config import ImageFindConfig

        base = os.path.realpath(str(tmp_path))
        values = dict(
            scan_dir=os.path.realpath(str(media_root)),
            db_path=os.path.join(base, "imagefind.db"),
            thumbnail_cache=os.path.join(base, "cache", "thumbnails"),
            full_image_cache=os.path.join(base, "cache", "full"),
            video_preview_cache=os.path.join(base, "cache", "video"),
            index_workers=4,
            enable_warmup=False,
            warmup_delay_s=0.0,
        )
        values.update(overrides)
        return ImageFindConfig(**values)

    return _make
