#!/usr/bin/env python3
"""
Unit tests for the AWS IAM client.

IAM calls are exercised against a stubbed boto3 client; session setup is
tested with a mocked boto3 session.
"""

import os
import sys
import unittest
from datetime import datetime
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import boto3
from botocore.exceptions import ClientError, NoCredentialsError
from botocore.stub import Stubber

from ad_iam_sync.clients.iam import IAMClient, CloudConnectionError, CloudQueryError
from ad_iam_sync.errors import ConnectionFailure, FetchError


ACCOUNT = '123456789012'
CREATED = datetime(2024, 1, 1)


def iam_user(name):
    return {
        'Path': '/',
        'UserName': name,
        'UserId': f"AIDA{name.upper():0<16}"[:21],
        'Arn': f"arn:aws:iam::{ACCOUNT}:user/{name}",
        'CreateDate': CREATED
    }


def iam_group(name):
    return {
        'Path': '/',
        'GroupName': name,
        'GroupId': f"AGPA{name.upper():0<16}"[:21],
        'Arn': f"arn:aws:iam::{ACCOUNT}:group/{name}",
        'CreateDate': CREATED
    }


class TestIAMClient(unittest.TestCase):
    """Test cases for IAMClient IAM calls."""

    def setUp(self):
        """Set up test fixtures."""
        self.client = IAMClient({'region': 'us-east-1'}, {'max_retries': 2, 'retry_wait_seconds': 0})
        self.client.iam = boto3.client(
            'iam',
            region_name='us-east-1',
            aws_access_key_id='testing',
            aws_secret_access_key='testing'
        )
        self.stubber = Stubber(self.client.iam)
        self.stubber.activate()

    def tearDown(self):
        """Deactivate the stubber."""
        self.stubber.deactivate()

    def test_list_users_paginated(self):
        """Test that every page of users is returned."""
        self.stubber.add_response(
            'list_users',
            {'Users': [iam_user('jdoe'), iam_user('asmith')], 'IsTruncated': True, 'Marker': 'page-2'},
            {}
        )
        self.stubber.add_response(
            'list_users',
            {'Users': [iam_user('bwayne')], 'IsTruncated': False},
            {'Marker': 'page-2'}
        )

        self.assertEqual(self.client.list_users(), ['jdoe', 'asmith', 'bwayne'])
        self.stubber.assert_no_pending_responses()

    def test_list_users_failure(self):
        """Test that a failed listing raises a fetch error."""
        self.stubber.add_client_error('list_users', service_error_code='ServiceFailure', http_status_code=500)

        with self.assertRaises(CloudQueryError) as context:
            self.client.list_users()
        self.assertIsInstance(context.exception, FetchError)

    def test_list_groups_for_user(self):
        """Test group membership listing for one user."""
        self.stubber.add_response(
            'list_groups_for_user',
            {'Groups': [iam_group('hr-managers-grp'), iam_group('engineering')], 'IsTruncated': False},
            {'UserName': 'jdoe'}
        )

        self.assertEqual(self.client.list_groups_for_user('jdoe'), ['hr-managers-grp', 'engineering'])

    def test_list_groups_for_unknown_user(self):
        """Test that a lookup error raises a fetch error."""
        self.stubber.add_client_error('list_groups_for_user', service_error_code='NoSuchEntity',
                                      http_status_code=404)

        with self.assertRaises(CloudQueryError):
            self.client.list_groups_for_user('ghost')

    def test_group_exists(self):
        """Test IAM group lookup."""
        self.stubber.add_response(
            'get_group',
            {'Group': iam_group('hr-managers-grp'), 'Users': [], 'IsTruncated': False},
            {'GroupName': 'hr-managers-grp', 'MaxItems': 1}
        )
        self.stubber.add_client_error('get_group', service_error_code='NoSuchEntity', http_status_code=404)

        self.assertTrue(self.client.group_exists('hr-managers-grp'))
        self.assertFalse(self.client.group_exists('nobody-grp'))

    def test_group_exists_error(self):
        """Test that other lookup errors are not reported as absence."""
        self.stubber.add_client_error('get_group', service_error_code='AccessDenied', http_status_code=403)

        with self.assertRaises(CloudQueryError):
            self.client.group_exists('hr-managers-grp')

    def test_add_user_to_group(self):
        """Test adding a user to an IAM group."""
        self.stubber.add_response('add_user_to_group', {},
                                  {'GroupName': 'hr-managers-grp', 'UserName': 'jdoe'})

        self.client.add_user_to_group('hr-managers-grp', 'jdoe')
        self.stubber.assert_no_pending_responses()

    def test_add_user_failure_propagates(self):
        """Test that a failed add raises for the caller to record."""
        self.stubber.add_client_error('add_user_to_group', service_error_code='LimitExceeded',
                                      http_status_code=409)

        with self.assertRaises(ClientError):
            self.client.add_user_to_group('hr-managers-grp', 'jdoe')

    def test_remove_non_member_is_noop(self):
        """Test that removing a non-member succeeds."""
        self.stubber.add_client_error('remove_user_from_group', service_error_code='NoSuchEntity',
                                      http_status_code=404)

        self.client.remove_user_from_group('hr-managers-grp', 'jdoe')

    def test_remove_user_from_group(self):
        """Test removing a user from an IAM group."""
        self.stubber.add_response('remove_user_from_group', {},
                                  {'GroupName': 'hr-managers-grp', 'UserName': 'jdoe'})

        self.client.remove_user_from_group('hr-managers-grp', 'jdoe')
        self.stubber.assert_no_pending_responses()

    def test_remove_failure_propagates(self):
        """Test that errors other than non-membership propagate."""
        self.stubber.add_client_error('remove_user_from_group', service_error_code='ServiceFailure',
                                      http_status_code=500)

        with self.assertRaises(ClientError):
            self.client.remove_user_from_group('hr-managers-grp', 'jdoe')


class TestIAMSession(unittest.TestCase):
    """Test cases for IAMClient session setup."""

    def make_session(self, sts):
        iam = Mock()
        session = Mock()
        session.client.side_effect = lambda service, config=None: sts if service == 'sts' else iam
        return session, iam

    def test_calls_before_connect(self):
        """Test that IAM calls fail before connect()."""
        client = IAMClient({})
        with self.assertRaises(CloudQueryError):
            client.list_users()

    def test_connect_verifies_identity(self):
        """Test that the session is verified with STS."""
        sts = Mock()
        sts.get_caller_identity.return_value = {
            'Account': ACCOUNT,
            'Arn': f"arn:aws:iam::{ACCOUNT}:user/svc-sync",
            'UserId': 'AIDAEXAMPLE'
        }
        session, iam = self.make_session(sts)
        client = IAMClient({'region': 'us-east-1'}, session=session)

        self.assertTrue(client.connect())
        self.assertEqual(client.account_id, ACCOUNT)
        self.assertIs(client.iam, iam)

    def test_connect_failure(self):
        """Test that unverifiable credentials raise a connection error after retries."""
        sts = Mock()
        sts.get_caller_identity.side_effect = NoCredentialsError()
        session, _ = self.make_session(sts)
        client = IAMClient({}, {'max_retries': 2, 'retry_wait_seconds': 0}, session=session)

        with self.assertRaises(CloudConnectionError) as context:
            client.connect()

        self.assertIsInstance(context.exception, ConnectionFailure)
        self.assertEqual(sts.get_caller_identity.call_count, 2)
        self.assertIsNone(client.iam)

    def test_client_config_disables_retries(self):
        """Test that botocore retries are disabled and timeouts applied."""
        client = IAMClient({'connect_timeout': 3, 'read_timeout': 7})
        config = client._client_config()

        self.assertEqual(config.connect_timeout, 3)
        self.assertEqual(config.read_timeout, 7)
        self.assertEqual(config.retries['max_attempts'], 0)


if __name__ == '__main__':
    unittest.main()
