"""Navigator Credentials Meta information.
   Navigator Credentials protects operator-entered secrets at rest and keeps
   an append-only audit trail of sensitive actions.
"""
__title__ = 'navigator_credentials'
__description__ = (
   'Field-level encryption of stored credentials, '
   'redacted audit logging and master key migration.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-credentials'
