import json
import unittest

import pandas as pd

from app.errors import MissingColumnError, ParseError
from app.models import UploadedFile
from app.utils import (
    cell_identity, extract_csv_identities, extract_json_identities, find_column, inspect_csv_headers,
    read_csv_rows, resolve_cell, tally_categories,
)


def csv_upload(text, name='users.csv'):
    return UploadedFile(name, text.encode('utf-8'), 'text/csv')


def json_upload(name, data):
    content = data if isinstance(data, bytes) else json.dumps(data).encode('utf-8')
    return UploadedFile(name, content, 'application/json')


class TestFindColumn(unittest.TestCase):
    def test_matches_ignoring_case_and_underscores(self):
        self.assertEqual(find_column(['Email_LkUp', 'CreatedBy0'], ['email_LkUp', 'email']), 'Email_LkUp')

    def test_no_match_returns_none(self):
        self.assertIsNone(find_column(['Name', 'Date'], ['email_LkUp', 'email']))

    def test_candidate_priority_wins_over_header_order(self):
        self.assertEqual(find_column(['email', 'EmailLkUp'], ['email_LkUp', 'email']), 'EmailLkUp')

    def test_whitespace_is_ignored(self):
        self.assertEqual(find_column(['Created By 0'], ['CreatedBy0']), 'Created By 0')


class TestCsvExtraction(unittest.TestCase):
    def test_reads_identities_and_created_by(self):
        df = read_csv_rows(csv_upload(
            'Email,CreatedBy0\n'
            ' a@x.com ,Alice\n'
            'a@x.com,Bob\n'
            'b@x.com,\n'
            ',Nobody\n'
        ))

        extraction = extract_csv_identities(df)

        self.assertEqual(extraction.identities, ['a@x.com', 'a@x.com', 'b@x.com'])
        self.assertEqual(extraction.created_by, {'a@x.com': 'Bob'})

    def test_trailing_comma_does_not_shift_columns(self):
        df = read_csv_rows(csv_upload('Email,CreatedBy0\na@x.com,Alice,\nb@x.com,Bob,\n'))

        extraction = extract_csv_identities(df)

        self.assertEqual(extraction.identities, ['a@x.com', 'b@x.com'])
        self.assertEqual(extraction.created_by, {'a@x.com': 'Alice', 'b@x.com': 'Bob'})

    def test_created_by_column_is_optional(self):
        df = read_csv_rows(csv_upload('email_LkUp\na@x.com\n'))

        extraction = extract_csv_identities(df)

        self.assertEqual(extraction.identities, ['a@x.com'])
        self.assertEqual(extraction.created_by, {})

    def test_missing_identity_column(self):
        df = read_csv_rows(csv_upload('Name,Date\nAl,2024-01-01\n'))

        with self.assertRaises(MissingColumnError) as ctx:
            extract_csv_identities(df)

        self.assertEqual(ctx.exception.message, 'Could not find email column in CSV')

    def test_cells_stay_text_without_identity_key(self):
        df = pd.DataFrame({'email': ['{"currentUser": "a@x.com"}', '42']})

        extraction = extract_csv_identities(df)

        self.assertEqual(extraction.identities, ['{"currentUser": "a@x.com"}', '42'])

    def test_embedded_json_cells_with_identity_key(self):
        df = pd.DataFrame({'payload': [
            '{"currentUser": " a@x.com "}',
            'b@x.com',
            '{"other": "c@x.com"}',
            '',
        ]})

        extraction = extract_csv_identities(df, ['payload'], None, identity_key='currentUser')

        self.assertEqual(extraction.identities, ['a@x.com', 'b@x.com'])

    def test_empty_file_is_a_parse_error(self):
        with self.assertRaises(ParseError) as ctx:
            read_csv_rows(csv_upload(''))

        self.assertIn('CSV parsing error', ctx.exception.message)

    def test_malformed_file_is_a_parse_error(self):
        with self.assertRaises(ParseError):
            read_csv_rows(csv_upload('a,b\n1,2\n1,2,3,4\n'))

    def test_inspect_headers_suggests_column(self):
        info = inspect_csv_headers(csv_upload('Name,EMAIL\nAl,al@x.com\n'))

        self.assertEqual(info, {'headers': ['Name', 'EMAIL'], 'suggested_column': 'EMAIL'})


class TestCellResolution(unittest.TestCase):
    def test_json_object_cell(self):
        cell = resolve_cell('{"currentUser": "a@x.com"}')

        self.assertEqual(cell.kind, 'json')
        self.assertEqual(cell.data, {'currentUser': 'a@x.com'})

    def test_scalars_and_broken_json_stay_text(self):
        self.assertEqual(resolve_cell('123').kind, 'text')
        self.assertEqual(resolve_cell('{not json').kind, 'text')
        self.assertEqual(resolve_cell(None).raw, '')

    def test_cell_identity(self):
        self.assertEqual(cell_identity('  a@x.com  '), 'a@x.com')
        self.assertIsNone(cell_identity('   '))
        self.assertEqual(cell_identity('{"k": "v"}', 'k'), 'v')
        self.assertIsNone(cell_identity('{"k": 5}', 'k'))


class TestJsonExtraction(unittest.TestCase):
    def test_category_tally(self):
        counts = tally_categories(['Nearmiss_01.json', 'Hazard_Nearmiss.json', 'Product.json'])

        self.assertEqual(counts, {
            'nearmiss': 2,
            'hazard': 1,
            'harm_injury': 0,
            'product': 1,
            'sales_delivery': 0,
        })

    def test_only_inclusion_files_are_parsed(self):
        files = [
            json_upload('BehaviouralObservation_1.json', {'currentUser': ' a@x.com '}),
            json_upload('Hazard_1.json', b'not even json'),
            json_upload('SalesDelivery_2.json', {'currentUser': 'ignored@x.com'}),
        ]

        extraction = extract_json_identities(files)

        self.assertEqual(extraction.identity_values, ['a@x.com'])
        self.assertEqual(extraction.skipped, [])
        self.assertEqual(extraction.category_counts['hazard'], 1)
        self.assertEqual(extraction.category_counts['sales_delivery'], 1)

    def test_bad_files_are_skipped_with_reason(self):
        files = [
            json_upload('behaviouralobservation_bad.json', b'{broken'),
            json_upload('behaviouralobservation_nokey.json', {'user': 'a@x.com'}),
            json_upload('behaviouralobservation_blank.json', {'currentUser': '  '}),
            json_upload('behaviouralobservation_list.json', [1, 2]),
            json_upload('behaviouralobservation_ok.json', {'currentUser': 'b@x.com'}),
        ]

        with self.assertLogs('app.utils', level='WARNING') as logs:
            extraction = extract_json_identities(files)

        self.assertEqual(extraction.identity_values, ['b@x.com'])
        self.assertEqual([item.filename for item in extraction.skipped], [
            'behaviouralobservation_bad.json',
            'behaviouralobservation_nokey.json',
            'behaviouralobservation_blank.json',
            'behaviouralobservation_list.json',
        ])
        self.assertIn('Missing key "currentUser"', extraction.skipped[1].reason)
        self.assertEqual(len(logs.output), 4)

    def test_custom_key_and_no_inclusion_marker(self):
        files = [
            json_upload('a.json', {'owner': 'a@x.com'}),
            json_upload('b.json', {'owner': 'b@x.com'}),
        ]

        extraction = extract_json_identities(files, identity_key='owner', inclusion_marker=None)

        self.assertEqual(extraction.identity_values, ['a@x.com', 'b@x.com'])
        self.assertEqual([item.filename for item in extraction.identities], ['a.json', 'b.json'])


if __name__ == '__main__':
    unittest.main()
