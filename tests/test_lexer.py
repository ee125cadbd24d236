from lexer import Lexer, tokenize


def kinds(source):
    return [(t.type, t.value) for t in tokenize(source).tokens]


def test_declaration_tokens():
    assert kinds("let x = 5;") == [
        ("Keyword", "let"),
        ("Identifier", "x"),
        ("Punct", "="),
        ("Number", "5"),
        ("Punct", ";"),
    ]


def test_token_spans_are_character_offsets():
    tokens = tokenize("let  abc").tokens
    assert (tokens[1].start, tokens[1].end) == (5, 8)


def test_decimal_numbers_need_digits_after_the_point():
    assert kinds("3.25") == [("Number", "3.25")]
    result = tokenize("3.")
    assert [t.value for t in result.tokens] == ["3"]
    assert [e.code for e in result.errors] == ["unknown-token"]


def test_operators_match_longest_first():
    assert [v for _, v in kinds("a === b !== c == d != e")] == ["a", "===", "b", "!==", "c", "==", "d", "!=", "e"]
    assert [v for _, v in kinds("a<=b&&c||!d")] == ["a", "<=", "b", "&&", "c", "||", "!", "d"]


def test_comments_and_whitespace_are_skipped():
    source = "// leading\nlet /* inline */ x\t= 1; // trailing"
    assert [v for _, v in kinds(source)] == ["let", "x", "=", "1", ";"]


def test_strings_keep_escapes_verbatim():
    tokens = tokenize(r"'it\'s' " + '"a\\nb"').tokens
    assert [t.type for t in tokens] == ["String", "String"]
    assert tokens[0].value == "it\\'s"
    assert tokens[1].value == "a\\nb"


def test_unterminated_string_consumes_to_end_with_warning():
    result = tokenize('let s = "abc')
    assert result.tokens[-1].type == "String"
    assert result.tokens[-1].value == "abc"
    assert result.tokens[-1].end == len('let s = "abc')
    assert not result.errors
    assert [w.code for w in result.warnings] == ["unterminated-string"]


def test_unterminated_block_comment_warns():
    result = tokenize("let x = 1; /* never closed")
    assert len(result.tokens) == 5
    assert [w.code for w in result.warnings] == ["unterminated-comment"]


def test_unknown_characters_are_skipped_one_at_a_time():
    result = tokenize("let @x = 1;")
    assert [t.value for t in result.tokens] == ["let", "x", "=", "1", ";"]
    assert len(result.errors) == 1
    assert result.errors[0].code == "unknown-token"
    assert (result.errors[0].start, result.errors[0].end) == (4, 5)


def test_non_ascii_letters_are_not_identifiers():
    result = tokenize("é")
    assert result.tokens == []
    assert result.errors[0].code == "unknown-token"


def test_oversized_input_yields_no_tokens():
    result = Lexer("let x = 1;", max_file_size=4).tokenize()
    assert result.tokens == []
    assert result.errors[0].code == "file-too-large"
    assert result.stats == {"size": 10, "tokens": 0}
