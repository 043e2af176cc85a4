from epubtrans.postproc import close_void_tags, compare_html_structure, fix_xhtml_fragment, is_well_formed


def test_compare_html_structure_detects_attr_change():
    src = 'See <a href="chapter2.xhtml#n1">note</a>.'
    trans = 'Voir <a href="chapter9.xhtml">note</a>.'
    ok, issues = compare_html_structure(src, trans)
    assert not ok
    assert any("href" in x for x in issues)


def test_compare_html_structure_ignores_text_changes():
    ok, issues = compare_html_structure('Hi <a id="x">there</a>', 'Salut <a id="x">toi</a>')
    assert ok
    assert issues == []


def test_close_void_tags():
    assert close_void_tags("a<br>b") == "a<br/>b"
    assert close_void_tags('<img src="a.png">') == '<img src="a.png"/>'
    assert close_void_tags("<hr/>") == "<hr/>"


def test_fix_xhtml_fragment_balances_markup():
    assert fix_xhtml_fragment("<em>open") == "<em>open</em>"
    assert "<br/>" in fix_xhtml_fragment("line<br>next")
    assert fix_xhtml_fragment("") == ""


def test_well_formed_fragments_are_kept_as_written():
    fragment = (
        'A&nbsp;B &amp; <svg viewBox="0 0 1 1" preserveAspectRatio="none"><rect/></svg>'
        ' <a epub:type="noteref" href="#n1">1</a>'
    )
    assert fix_xhtml_fragment(fragment) == fragment
    assert is_well_formed("x <em>y</em>")
    assert not is_well_formed("x <em>y")


def test_bare_ampersand_is_escaped_by_repair():
    assert fix_xhtml_fragment("Tom & Jerry") == "Tom &amp; Jerry"
