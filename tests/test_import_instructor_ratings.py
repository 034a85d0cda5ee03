"""Tests for the instructor ratings CSV import."""
from unittest.mock import Mock

import pytest
import responses

from config import ApiConfig
from jobs.import_instructor_ratings import (
    CustomerLink,
    ImportRatingsConfig,
    dedupe_formula,
    discover_customer_link,
    download_csv,
    run,
)

CSV_TEXT = "Contact,Date,Rating,Comment,Class\njane@example.com,2/2/2026,5,Great class,Cycle\n"

SCHEMA = [
    {
        'id': 'tblFeedback',
        'name': 'Feedbacks',
        'primaryFieldId': 'fldContact',
        'fields': [
            {'id': 'fldContact', 'name': 'Contact', 'type': 'singleLineText'},
            {'id': 'fldCustomer', 'name': 'Customer', 'type': 'multipleRecordLinks',
             'options': {'linkedTableId': 'tblCustomers'}},
        ],
    },
    {
        'id': 'tblCustomers',
        'name': 'Customers',
        'primaryFieldId': 'fldEmail',
        'fields': [{'id': 'fldEmail', 'name': 'Email', 'type': 'email'}],
    },
]


class FakeAirtable:
    """In-memory stand-in for the few AirtableClient calls the import makes."""

    def __init__(self, form_fields):
        self.form_fields = form_fields
        self.tables = {
            'tblLogs': {},
            'tblFeedback': {},
            'tblCustomers': {'recCust1': {'id': 'recCust1', 'fields': {'Email': 'jane@example.com'}}},
        }
        self.counter = 0

    def create_records(self, table, fields_list, typecast=False):
        created = []
        for fields in fields_list:
            self.counter += 1
            record = {'id': f'rec{self.counter:03d}', 'fields': dict(fields)}
            self.tables[table][record['id']] = record
            created.append(record)
        return created

    def get_record(self, table, record_id):
        assert table == 'tblForm'
        return {'id': record_id, 'fields': self.form_fields}

    def update_record(self, table, record_id, fields):
        self.tables[table][record_id]['fields'].update(fields)
        return self.tables[table][record_id]

    def get_base_tables(self):
        return SCHEMA

    def find_first(self, table, formula):
        for record in self.tables[table].values():
            fields = record['fields']
            if table == 'tblFeedback':
                if all(f'"{value}"' in formula for value in (
                    fields["Contact"], fields["Studio"][0], fields["DATE OF RATING"]
                )):
                    return record
            elif f'"{fields["Email"]}"' in formula:
                return record
        return None

    def log(self):
        (record,) = self.tables['tblLogs'].values()
        return record['fields']

    def feedback(self):
        return [r['fields'] for r in self.tables['tblFeedback'].values()]


@pytest.fixture
def config():
    return ImportRatingsConfig(
        api=ApiConfig(airtable_token='pat', airtable_base_id='appBASE', mtek_token=None),
        form_table='tblForm',
        feedbacks_table='tblFeedback',
        logs_table='tblLogs',
        form_record_id='recForm1',
    )


@pytest.fixture
def airtable():
    return FakeAirtable({
        'Studio': ['recStudio1'],
        'CSV Upload': [{'url': 'https://files.example.com/ratings.csv', 'filename': 'ratings.csv'}],
    })


def serve(text):
    return lambda url, timeout: text


class TestRun:
    """Test cases for the import run."""

    def test_imports_row_and_links_customer(self, config, airtable):
        result = run(config, airtable=airtable, fetch_csv=serve(CSV_TEXT))

        assert result.get('imported') == 1
        assert result.get('ignored') == 0
        assert airtable.feedback() == [{
            'Contact': 'jane@example.com',
            'Studio': ['recStudio1'],
            'DATE OF RATING': '2026-02-02T00:00:00.000Z',
            'Type': 'Instructor Feedback',
            'Customer': ['recCust1'],
            'Rating': 5,
            'COMMENT': 'Great class',
            'CLASSTYPE': 'Cycle',
        }]
        assert airtable.log() == {
            'Status': 'Completed',
            'Type': 'Instructor Ratings Import',
            'Ratings Imported': 1,
            'Ratings Ignored': 0,
        }

    def test_second_run_is_idempotent(self, config, airtable):
        run(config, airtable=airtable, fetch_csv=serve(CSV_TEXT))
        airtable.tables['tblLogs'].clear()

        result = run(config, airtable=airtable, fetch_csv=serve(CSV_TEXT))

        assert result.get('imported') == 0
        assert result.get('ignored') == 1
        assert len(airtable.feedback()) == 1
        assert airtable.log()['Status'] == 'Completed'

    def test_same_rating_for_another_studio_is_imported(self, config, airtable):
        run(config, airtable=airtable, fetch_csv=serve(CSV_TEXT))
        airtable.tables['tblLogs'].clear()
        airtable.form_fields['Studio'] = ['recStudio2']

        result = run(config, airtable=airtable, fetch_csv=serve(CSV_TEXT))

        assert result.get('imported') == 1
        assert result.get('ignored') == 0
        assert [f['Studio'] for f in airtable.feedback()] == [['recStudio1'], ['recStudio2']]

    def test_unknown_customer_is_an_issue(self, config, airtable):
        csv_text = "Contact,Date,Rating\nnobody@example.com,2026-02-02,4\n"

        result = run(config, airtable=airtable, fetch_csv=serve(csv_text))

        assert result.get('imported') == 1
        assert 'Customer' not in airtable.feedback()[0]
        log = airtable.log()
        assert log['Status'] == 'ISSUE'
        assert log['Issue log'] == 'Line 2: Customer not found in Airtable for nobody@example.com'

    def test_unusable_lines_are_ignored(self, config, airtable):
        csv_text = "Contact,Date,Rating\n,2026-02-02,4\njane@example.com,someday,3\n"

        result = run(config, airtable=airtable, fetch_csv=serve(csv_text))

        assert result.get('imported') == 0
        assert result.get('ignored') == 2
        log = airtable.log()
        assert log['Status'] == 'ISSUE'
        assert log['Ratings Ignored'] == 2
        assert log['Issue log'].splitlines() == [
            'Line 2: Missing contact or date',
            'Line 3: Missing contact or date',
        ]

    def test_name_contact_resolved_through_mtek(self, config, airtable):
        mtek = Mock()
        mtek.search_users_by_name.return_value = [
            {'id': '1', 'attributes': {'email': ''}},
            {'id': '2', 'attributes': {'email': 'jane@example.com'}},
        ]
        csv_text = "Contact,Date,Rating\nJane Doe,2026-02-02,5\n"

        run(config, airtable=airtable, mtek=mtek, fetch_csv=serve(csv_text))

        mtek.search_users_by_name.assert_called_once_with('Jane Doe', page_size=5)
        assert airtable.feedback()[0]['Customer'] == ['recCust1']
        assert airtable.feedback()[0]['Contact'] == 'Jane Doe'

    def test_name_contact_without_mtek(self, config, airtable):
        result = run(config, airtable=airtable, fetch_csv=serve("Contact,Date\nJane Doe,2026-02-02\n"))

        assert result.get('imported') == 1
        assert 'Customer' not in airtable.feedback()[0]
        assert airtable.log()['Status'] == 'Completed'

    def test_failure_marks_log_as_issue(self, config):
        airtable = FakeAirtable({'Studio': ['recStudio1']})

        with pytest.raises(RuntimeError, match='Missing Studio or CSV Upload'):
            run(config, airtable=airtable, fetch_csv=serve(CSV_TEXT))

        log = airtable.log()
        assert log['Status'] == 'ISSUE'
        assert 'Missing Studio or CSV Upload' in log['Issue log']


class TestHelpers:
    """Test cases for schema discovery, dedupe formula and download."""

    def test_discover_customer_link(self):
        airtable = Mock()
        airtable.get_base_tables.return_value = SCHEMA

        assert discover_customer_link(airtable, 'Feedbacks') == CustomerLink('tblCustomers', 'Email')
        assert discover_customer_link(airtable, 'tblFeedback') == CustomerLink('tblCustomers', 'Email')

    def test_discover_customer_link_missing_table(self):
        airtable = Mock()
        airtable.get_base_tables.return_value = SCHEMA[1:]

        with pytest.raises(RuntimeError, match='not found in base schema'):
            discover_customer_link(airtable, 'tblFeedback')

    def test_dedupe_formula(self):
        assert dedupe_formula('jane@example.com', 'recStudio1', '2026-02-02T00:00:00.000Z') == (
            'AND({Contact} = "jane@example.com", '
            'FIND("recStudio1", ARRAYJOIN({Studio})) > 0, '
            'IS_SAME({DATE OF RATING}, DATETIME_PARSE("2026-02-02T00:00:00.000Z"), \'day\'))'
        )

    @responses.activate
    def test_download_csv_strips_bom(self):
        responses.add(
            responses.GET,
            'https://files.example.com/ratings.csv',
            body=b'\xef\xbb\xbfContact,Date\n',
            status=200,
        )

        assert download_csv('https://files.example.com/ratings.csv') == 'Contact,Date\n'
