"""Credential Broker Meta information.
   Credential Broker issues short-lived sessions for on-premises hosts
   from secrets held in AWS Secrets Manager.
"""
__title__ = 'credential_broker'
__description__ = (
   'Credential Broker issues short-lived sessions for on-premises hosts '
   'from secrets held in AWS Secrets Manager.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/credential-broker'
