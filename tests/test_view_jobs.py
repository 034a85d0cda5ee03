"""Tests for the view-driven maintenance jobs."""
from unittest.mock import Mock, call

import pytest

from clients.http_retry import HttpStatusError
from config import ApiConfig, ConfigError
from jobs import clear_reservations_view, sync_contact_emails, update_class_checkins
from jobs.clear_reservations_view import ClearViewConfig
from jobs.sync_contact_emails import SyncEmailsConfig, lookup_email_by_name
from jobs.update_class_checkins import UpdateCheckinsConfig


@pytest.fixture
def api():
    return ApiConfig(airtable_token='pat', airtable_base_id='appBASE', mtek_token='tok')


class TestSyncContactEmails:
    """Test cases for writing MTEK emails onto rating rows."""

    def test_run(self, api):
        airtable = Mock()
        airtable.list_records.return_value = [
            {'id': 'rec1', 'fields': {'Contact': 'Jane Doe', 'CAL_NAME': 'Ride'}},
            {'id': 'rec2', 'fields': {'Contact': '   '}},
            {'id': 'rec3', 'fields': {'Contact': 'Nobody'}},
            {'id': 'rec4', 'fields': {'Contact': 'Broken'}},
        ]
        mtek = Mock()
        mtek.search_users_by_name.side_effect = [
            [{'id': '1', 'attributes': {'email': 'jane@example.com'}}],
            [],
            HttpStatusError(500, 'boom'),
        ]

        result = sync_contact_emails.run(SyncEmailsConfig(api=api), airtable=airtable, mtek=mtek)

        assert result.counts == {
            'updated': 1, 'skipped_no_contact': 1, 'skipped_no_match': 1, 'errors': 1
        }
        airtable.list_records.assert_called_once_with('Ratings', view='ADD EMAIL DO NOT TOUCH')
        airtable.update_record.assert_called_once_with('Ratings', 'rec1', {'EMAIL': 'jane@example.com'})

    def test_lookup_uses_first_match(self):
        mtek = Mock()
        mtek.search_users_by_name.return_value = [{'id': '1', 'attributes': {'email': ''}}]

        assert lookup_email_by_name(mtek, 'Jane') is None
        mtek.search_users_by_name.assert_called_once_with('Jane', page_size=1)


class TestUpdateClassCheckins:
    """Test cases for writing check-in counts."""

    def test_counts_in_batches_of_ten(self, api):
        airtable = Mock()
        airtable.list_records.return_value = [
            {'id': f'rec{i}', 'fields': {'Class Session ID': 900 + i}} for i in range(12)
        ] + [{'id': 'recNone', 'fields': {}}]
        mtek = Mock()
        mtek.list_reservations.return_value = [{'id': 'a'}, {'id': 'b'}]

        result = update_class_checkins.run(UpdateCheckinsConfig(api=api), airtable=airtable, mtek=mtek)

        assert result.counts == {'updated': 12, 'skipped': 1}
        assert mtek.list_reservations.call_args_list[0] == call(
            {'class_session': '900', 'status': 'check_in'}, page_size=1000
        )
        batches = [c.args[1] for c in airtable.update_records.call_args_list]
        assert [len(b) for b in batches] == [10, 2]
        assert batches[0][0] == {'id': 'rec0', 'fields': {'Count': 2}}

    def test_empty_view(self, api):
        airtable = Mock()
        airtable.list_records.return_value = []

        result = update_class_checkins.run(UpdateCheckinsConfig(api=api), airtable=airtable, mtek=Mock())

        assert result.counts == {}
        airtable.update_records.assert_not_called()

    def test_count_failure_is_a_record_error(self, api):
        airtable = Mock()
        airtable.list_records.return_value = [{'id': 'rec1', 'fields': {'Class Session ID': '1'}}]
        mtek = Mock()
        mtek.list_reservations.side_effect = HttpStatusError(404, 'gone')

        result = update_class_checkins.run(UpdateCheckinsConfig(api=api), airtable=airtable, mtek=mtek)

        assert result.get('errors') == 1
        airtable.update_records.assert_not_called()


class TestClearReservationsView:
    """Test cases for clearing the reservations view."""

    def test_deletes_everything_in_view(self, api):
        airtable = Mock()
        airtable.list_records.return_value = [{'id': 'rec1'}, {'id': 'rec2'}, {}]
        airtable.delete_records.return_value = 2

        result = clear_reservations_view.run(ClearViewConfig(api=api), airtable=airtable)

        assert result.get('deleted') == 2
        airtable.list_records.assert_called_once_with('Class Reservations', view='TO DELETE DO NOT TOUCH')
        airtable.delete_records.assert_called_once_with('Class Reservations', ['rec1', 'rec2'])

    def test_refuses_above_limit(self, api):
        airtable = Mock()
        airtable.list_records.return_value = [{'id': f'rec{i}'} for i in range(3)]

        with pytest.raises(RuntimeError, match='Refusing to delete 3 records'):
            clear_reservations_view.run(ClearViewConfig(api=api, max_records=2), airtable=airtable)

        airtable.delete_records.assert_not_called()

    def test_empty_view(self, api):
        airtable = Mock()
        airtable.list_records.return_value = []

        result = clear_reservations_view.run(ClearViewConfig(api=api), airtable=airtable)

        assert result.counts == {}
        airtable.delete_records.assert_not_called()

    def test_config_does_not_need_mtek(self):
        config = ClearViewConfig.from_env({
            'AIRTABLE_TOKEN': 'pat',
            'AIRTABLE_CUSTOMER_BASE_ID': 'appCUST',
            'MAX_RECORDS_TO_DELETE': '100',
        })

        assert config.api.airtable_base_id == 'appCUST'
        assert config.api.mtek_token is None
        assert config.max_records == 100

    def test_config_bad_limit(self):
        with pytest.raises(ConfigError, match='MAX_RECORDS_TO_DELETE'):
            ClearViewConfig.from_env({
                'AIRTABLE_TOKEN': 'pat',
                'AIRTABLE_BASE_ID': 'appBASE',
                'MAX_RECORDS_TO_DELETE': 'lots',
            })
