# Copyright 2020 Philips HSDP
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Connects to a Cloud Foundry target and prints its info, spaces, orgs,
applications, services and service offerings.

Authenticate with one of:

    cf-sample -t https://api.example.com -s dev -u USER -p PASSWORD
    cf-sample -t https://api.example.com -s dev -a ACCESS -r REFRESH
    cf-sample -t https://api.example.com -s dev   # cached token
"""
import sys
import logging
import argparse
import requests
import cf_client
from urllib.parse import urlsplit


class ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors on stdout and exits with status 1"""

    def error(self, message):
        error(message)


def new_argument_parser():
    args = ArgumentParser(prog='cf-sample', description=__doc__,
                          formatter_class=argparse.RawTextHelpFormatter)
    args.add_argument('-t', '--target', required=True,
                      help='Cloud Foundry target URL')
    args.add_argument('-s', '--space', required=True,
                      help='Cloud Foundry space to target')
    args.add_argument('-o', '--organization',
                      help='Cloud Foundry organization to target')
    args.add_argument('-u', '--username', help='Username for login')
    args.add_argument('-p', '--password', help='Password for login')
    args.add_argument('-a', '--accessToken', dest='access_token',
                      help='OAuth access token')
    args.add_argument('-r', '--refreshToken', dest='refresh_token',
                      help='OAuth refresh token')
    args.add_argument('-ci', '--clientID', dest='client_id',
                      help='OAuth client ID')
    args.add_argument('-cs', '--clientSecret', dest='client_secret',
                      help='OAuth client secret')
    args.add_argument('-tc', '--trustSelfSignedCerts',
                      dest='trust_self_signed_certs', action='store_true',
                      help='Trust self-signed SSL certificates')
    args.add_argument('-v', '--verbose', action='store_true',
                      help='Enable logging of requests and responses')
    args.add_argument('-d', '--debug', action='store_true',
                      help='Enable debug logging of requests and responses')
    return args


def out(s):
    print(s)


def error(message):
    out(message)
    sys.exit(1)


def options_not_paired(first, second):
    return (first is None) != (second is None)


def get_target_uri(target):
    """Checks that target is an absolute URI

    Returns:
        str: the target with trailing slashes removed"""
    try:
        parts = urlsplit(target)
        parts.port  # validates
    except ValueError as e:
        error('The target URL is not valid: {}'.format(e))
    if not parts.scheme or not parts.netloc:
        error('The target URL is not valid: URI is not absolute: {}'
              .format(target))
    return target.rstrip('/')


def validate_args(args):
    if (args.username is not None or args.password is not None) and \
            (args.access_token is not None or args.refresh_token is not None):
        error('username/password and accessToken/refreshToken options '
              'can not be used together')

    if options_not_paired(args.username, args.password):
        error('--username and --password options must be provided together')

    if options_not_paired(args.access_token, args.refresh_token):
        error('--accessToken and --refreshToken options must be provided '
              'together')

    if options_not_paired(args.client_id, args.client_secret):
        error('--clientID and --clientSecret options must be provided '
              'together')

    get_target_uri(args.target)


def get_cloud_credentials(args, tokens_file=None):
    """Picks the authentication mode from the parsed options: username and
    password first, then access and refresh tokens, and otherwise the token
    cached for the target.

    Args:
        args (argparse.Namespace): validated options
        tokens_file (cf_client.TokensFile|None): cached token store

    Returns:
        PasswordCredentials|TokenCredentials|CachedTokenCredentials"""
    if args.username is not None and args.password is not None:
        return cf_client.PasswordCredentials(
            args.username, args.password, args.client_id, args.client_secret)

    if args.access_token is not None and args.refresh_token is not None:
        token = cf_client.parse_token(args.access_token, args.refresh_token)
        return cf_client.TokenCredentials(
            token, args.client_id, args.client_secret)

    if tokens_file is None:
        tokens_file = cf_client.TokensFile()
    target = get_target_uri(args.target)
    token = tokens_file.retrieve_token(target)
    if token is None:
        error('No cached token found for {}. Use --username/--password or '
              '--accessToken/--refreshToken'.format(target))
    return cf_client.CachedTokenCredentials(
        token, args.client_id, args.client_secret)


def setup_debug_logging(args):
    if args.debug:
        logging.basicConfig(
            format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
        logging.getLogger('cf_client').setLevel(logging.DEBUG)
        logging.getLogger('urllib3').setLevel(logging.DEBUG)


def print_rest_log(request, response):
    out('REQUEST: {} {}'.format(request.method, request.url))
    out('RESPONSE: {} {}'.format(response.status_code, response.reason))


def get_cloud_foundry_client(args, credentials,
                             factory=cf_client.new_cloud_foundry_client):
    out('Connecting to Cloud Foundry target: ' + args.target)

    client = factory(
        credentials,
        get_target_uri(args.target),
        proxy=None,
        trust_self_signed_certs=args.trust_self_signed_certs,
        rest_log=print_rest_log if args.verbose else None,
        debug=args.debug,
    )

    if args.username is not None:
        client.login()

    return client


def display_cloud_info(client):
    info = client.get_cloud_info()
    out('\nInfo:')
    out(info.name)
    out(info.version)
    out(info.description)

    out('\nSpaces:')
    for space in client.get_spaces():
        out(space.name + ':' + space.organization.name)

    out('\nOrgs:')
    for org in client.get_organizations():
        out(org.name)

    out('\nApplications:')
    for app in client.get_applications():
        out(app.name + ':')
        out('\t{}'.format(app.staging.buildpack_url))
        out('\t{}'.format(app.staging.command))
        if app.services:
            out('\tBound Services:')
            for service_name in app.services:
                out('\t\t' + service_name)

    out('\nServices:')
    for service in client.get_services():
        out(service.name + ':')
        out('\t{}'.format(service.label))
        out('\t{}'.format(service.plan))

    out('\nService Offerings:')
    for offering in client.get_service_offerings():
        out(offering.label + ':')
        out('\tPlans:')
        for plan in offering.cloud_service_plans:
            out('\t\t' + plan.name)
        out('\t{}'.format(offering.description))


def run(args):
    validate_args(args)

    setup_debug_logging(args)

    credentials = get_cloud_credentials(args)
    client = get_cloud_foundry_client(args, credentials)

    display_cloud_info(client)


def main(argv=None):
    args = new_argument_parser().parse_args(argv)
    try:
        run(args)
    except (cf_client.CFException,
            requests.exceptions.RequestException) as e:
        error(str(e))


if __name__ == '__main__':
    main()
