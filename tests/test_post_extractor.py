import unittest

from bs4 import BeautifulSoup

from post_extractor import (
    ExtractionError,
    PostDocument,
    cleanup_markdown,
    extract_metadata,
    extract_post,
    find_content_element,
    render_post,
)

URL: str = 'https://news.example.com/p/batteries'

POST_HTML: str = """\
<!DOCTYPE html>
<html>
<head>
  <title>Batteries | Example</title>
  <meta property="og:title" content="OG Batteries">
  <meta property="og:description" content="OG description">
  <script type="application/ld+json">
    {"@type": "NewsArticle", "datePublished": "2024-05-01T10:00:00Z",
     "author": [{"name": "Ada"}, {"name": "Grace"}]}
  </script>
</head>
<body>
  <nav><a href="/">Home</a></nav>
  <article>
    <h1>How batteries got cheap</h1>
    <h3>A short history of the learning curve</h3>
    <p>Lithium-ion cell prices have fallen by roughly ninety percent over the last decade, and the
       reasons are mostly about manufacturing scale rather than any single breakthrough in chemistry.</p>
    <p>Factories learned to run faster with less scrap, and suppliers followed them to new regions,
       which is why renewable storage projects now pencil out in places they never did before.</p>
    <iframe src="https://video.example.com/embed/42"></iframe>
    <p><a href="https://news.example.com/subscribe">Subscribe now</a></p>
    <div class="subscription-widget">Get more posts like this one</div>
    <button>Share</button>
  </article>
  <footer>Footer text</footer>
</body>
</html>
"""


class TestExtractMetadata(unittest.TestCase):
    """
    Tests metadata lookup order and listing-record fallbacks.
    """

    def test_prefers_page_fields(self) -> None:
        soup = BeautifulSoup(POST_HTML, 'html.parser')
        computed: dict[str, str] = extract_metadata(soup, {'title': 'Listing title'})
        expected: dict[str, str] = {
            'title': 'How batteries got cheap',
            'date_raw': '2024-05-01T10:00:00Z',
            'author': 'Ada, Grace',
            'subtitle': 'A short history of the learning curve',
        }
        self.assertEqual(computed, expected)

    def test_meta_tags_before_listing(self) -> None:
        html: str = (
            '<html><head><meta property="og:title" content="OG title">'
            '<meta name="author" content="Lenny">'
            '<meta property="article:published_time" content="2023-01-02">'
            '<meta property="og:description" content="teaser"></head><body><main>x</main></body></html>'
        )
        computed: dict[str, str] = extract_metadata(BeautifulSoup(html, 'html.parser'), {})
        self.assertEqual(computed['title'], 'OG title')
        self.assertEqual(computed['author'], 'Lenny')
        self.assertEqual(computed['date_raw'], '2023-01-02')
        self.assertEqual(computed['subtitle'], 'teaser')

    def test_listing_fallbacks(self) -> None:
        """
        Checks that a bare page falls back to the listing record, then to "Untitled".
        """
        soup = BeautifulSoup('<html><body><main>x</main></body></html>', 'html.parser')
        computed: dict[str, str] = extract_metadata(soup, {'title': 'From listing', 'post_date': '2022-09-09'})
        self.assertEqual(computed['title'], 'From listing')
        self.assertEqual(computed['date_raw'], '2022-09-09')
        self.assertEqual(extract_metadata(soup, {})['title'], 'Untitled')

    def test_time_element_date(self) -> None:
        soup = BeautifulSoup('<html><body><time datetime="2021-12-31">Dec 31</time></body></html>', 'html.parser')
        self.assertEqual(extract_metadata(soup, {})['date_raw'], '2021-12-31')


class TestContentElement(unittest.TestCase):
    """
    Tests body location and junk stripping.
    """

    def test_junk_removed_and_iframe_linked(self) -> None:
        soup = BeautifulSoup(POST_HTML, 'html.parser')
        el = find_content_element(soup)
        self.assertIsNotNone(el)
        text: str = el.get_text()  # type: ignore[union-attr]
        self.assertNotIn('Subscribe now', text)
        self.assertNotIn('Get more posts', text)
        self.assertNotIn('Share', text)
        self.assertIn('Embedded content', text)
        self.assertIsNone(el.select_one('iframe'))  # type: ignore[union-attr]

    def test_fallback_selectors(self) -> None:
        soup = BeautifulSoup('<div class="post-content"><p>body</p></div>', 'html.parser')
        self.assertEqual(find_content_element(soup).get_text(), 'body')  # type: ignore[union-attr]


class TestExtractPost(unittest.TestCase):
    def test_extracts_document(self) -> None:
        """
        Checks that a full page yields metadata plus a Markdown body with the article text.
        """
        post: PostDocument = extract_post(POST_HTML, URL, {})
        self.assertEqual(post.title, 'How batteries got cheap')
        self.assertEqual(post.url, URL)
        self.assertIn('manufacturing scale', post.body_markdown)
        self.assertNotIn('Subscribe now', post.body_markdown)
        self.assertNotIn('Footer text', post.body_markdown)
        self.assertTrue(post.body_markdown.endswith('\n'))

    def test_body_structure_is_kept(self) -> None:
        """
        Checks that short lists, small tables, quotes, code blocks and figure captions all survive conversion.
        """
        html: str = (
            '<html><body><article><h1>Structure</h1>'
            '<ul><li>first item</li><li>second item</li></ul>'
            '<table><tr><th>Year</th><th>Price</th></tr><tr><td>2010</td><td>1100</td></tr></table>'
            '<blockquote><p>A quoted line.</p></blockquote>'
            '<pre><code>print("hi")</code></pre>'
            '<figure><img src="https://x/chart.png" alt="Chart"><figcaption>Cell prices by year</figcaption></figure>'
            '</article></body></html>'
        )
        body: str = extract_post(html, URL).body_markdown
        self.assertIn('# Structure', body)
        self.assertIn('- first item\n- second item', body)
        self.assertIn('| Year | Price |', body)
        self.assertIn('| --- | --- |', body)
        self.assertIn('| 2010 | 1100 |', body)
        self.assertIn('> A quoted line.', body)
        self.assertIn('```\nprint("hi")\n```', body)
        self.assertIn('![Chart](https://x/chart.png)', body)
        self.assertIn('*Cell prices by year*', body)

    def test_missing_body_raises(self) -> None:
        with self.assertRaises(ExtractionError) as ctx:
            extract_post('<html><body><div>nothing here</div></body></html>', URL)
        self.assertEqual(ctx.exception.url, URL)


class TestRender(unittest.TestCase):
    """
    Tests Markdown rendering and cleanup.
    """

    def test_render_post(self) -> None:
        post = PostDocument(
            title='Intro',
            author='Lenny',
            published_date_raw='2024-01-01',
            subtitle='Welcome',
            body_markdown='Body text.\n',
            url='https://x/p/intro',
        )
        computed: str = render_post(post)
        expected: str = (
            '# Intro\n\n'
            '> Welcome\n\n'
            '- Date: 2024-01-01\n'
            '- Author: Lenny\n'
            '- Link: https://x/p/intro\n\n'
            'Body text.\n'
            '\n\n---\n\n'
        )
        self.assertEqual(computed, expected)

    def test_render_front_matter_escapes_quotes(self) -> None:
        post = PostDocument('Say "hi"', '', '', '', 'b\n', 'https://x')
        computed: str = render_post(post, front_matter=True)
        self.assertTrue(computed.startswith('---\ntitle: "Say \\"hi\\""\nurl: "https://x"\n---\n\n# Say "hi"\n\n- Link: https://x\n\n'))

    def test_cleanup_markdown(self) -> None:
        computed: str = cleanup_markdown('\r\n\r\nA  \r\n\n\n\n\nB\t\n')
        expected: str = 'A\n\nB\n'
        self.assertEqual(computed, expected)


if __name__ == '__main__':
    unittest.main()
