import csv
import io

from csv_exporter import escape_csv_value, export_data_to_csv


def test_escape_plain_and_special_values():
    assert escape_csv_value("plain") == "plain"
    assert escape_csv_value(None) == ""
    assert escape_csv_value(42) == "42"
    assert escape_csv_value("a,b") == '"a,b"'
    assert escape_csv_value('say "hi"') == '"say ""hi"""'
    assert escape_csv_value("line\nbreak") == '"line\nbreak"'


def test_export_parses_back_with_csv_reader():
    rows = [
        {"Name": 'Doe, "JD" John', "Note": "first\nsecond", "Score": 9.5},
        {"Name": "Plain", "Note": None, "Score": 7},
    ]
    text = export_data_to_csv(rows)
    assert text.startswith("Name,Note,Score\r\n")

    parsed = list(csv.reader(io.StringIO(text, newline="")))
    assert parsed == [
        ["Name", "Note", "Score"],
        ['Doe, "JD" John', "first\nsecond", "9.5"],
        ["Plain", "", "7"],
    ]


def test_header_comes_from_first_row():
    text = export_data_to_csv([{"a": 1, "b": 2}, {"b": 3, "c": 4}])
    assert text.split("\r\n") == ["a,b", "1,2", ",3"]


def test_empty_input_is_empty_string():
    assert export_data_to_csv([]) == ""
