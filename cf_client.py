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
import re
import os
import json
import time
import logging
import requests
import urllib3
from base64 import urlsafe_b64decode
from collections import namedtuple
from requests.exceptions import HTTPError
from urllib.parse import urlencode, urlsplit, urlunsplit


log = logging.getLogger(__name__)


OAuth2AccessToken = namedtuple(
    'OAuth2AccessToken', ['value', 'refresh_token'])
OAuth2AccessToken.__new__.__defaults__ = (None,)

PasswordCredentials = namedtuple(
    'PasswordCredentials',
    ['username', 'password', 'client_id', 'client_secret'])
PasswordCredentials.__new__.__defaults__ = (None, None)

TokenCredentials = namedtuple(
    'TokenCredentials', ['token', 'client_id', 'client_secret'])
TokenCredentials.__new__.__defaults__ = (None, None)

CachedTokenCredentials = namedtuple(
    'CachedTokenCredentials', ['token', 'client_id', 'client_secret'])
CachedTokenCredentials.__new__.__defaults__ = (None, None)

CloudInfo = namedtuple('CloudInfo', ['name', 'version', 'description'])
CloudOrganization = namedtuple('CloudOrganization', ['guid', 'name'])
CloudSpace = namedtuple('CloudSpace', ['guid', 'name', 'organization'])
Staging = namedtuple('Staging', ['buildpack_url', 'command'])
CloudApplication = namedtuple(
    'CloudApplication', ['guid', 'name', 'staging', 'services'])
CloudService = namedtuple('CloudService', ['guid', 'name', 'label', 'plan'])
CloudServicePlan = namedtuple('CloudServicePlan', ['guid', 'name'])
CloudServiceOffering = namedtuple(
    'CloudServiceOffering',
    ['guid', 'label', 'description', 'cloud_service_plans'])


def parse_token(value, refresh_token=None):
    """Builds an OAuth2AccessToken from a raw token string, dropping the
    ``bearer`` prefix that the CF CLI stores in front of access tokens.

    Args:
        value (str): access token string
        refresh_token (str|None): refresh token string

    Returns:
        OAuth2AccessToken"""
    value = re.sub(r'^bearer\s+', '', value.strip(), flags=re.IGNORECASE)
    return OAuth2AccessToken(value, refresh_token or None)


def jwt_decode(jwt):
    """Decodes a JWT token. It is useful primarily to introspect a UAA JWT
    token without making a request to UAA.

    WARNING: jwt_decode() does NOT verify the token's signature. DO NOT rely on
    this to verify a token signature.

    Args:
        jwt (str): JWT token string

    Returns:
        dict: A dictionary of the token's attributes"""
    parts = jwt.split('.', 2)
    if len(parts) != 3:
        raise RequestException('JWT is invalid.')
    try:
        # add extra padding (==) to avoid b64decode errors
        data = urlsafe_b64decode((parts[1] + '==')).decode('utf-8')
        data = json.loads(data)
    except (ValueError, UnicodeDecodeError):
        raise RequestException('JWT is invalid.')
    if not isinstance(data, dict):
        raise RequestException('JWT is invalid.')
    return data


def is_expired(jwt, now):
    data = jwt_decode(jwt)
    if 'exp' not in data:
        raise RequestException('JWT expiration not found: {}'.format(data))
    return int(data['exp']) <= now


class CFException(Exception):
    """Base class of all exceptions raised by this module"""
    pass


class RequestException(CFException):
    request = None

    def __init__(self, msg, request=None):
        super(RequestException, self).__init__(msg)
        self.request = request


class ResponseException(CFException):
    response = None
    error = None

    def __init__(self, msg, error=None):
        super(ResponseException, self).__init__(msg)
        self.error = error
        if error is not None:
            self.response = error.response


class ConfigException(CFException):
    config = None

    def __init__(self, msg, config=None):
        super(ConfigException, self).__init__(msg)
        self.config = config


def send_request(config, method, url, **kwargs):
    """Sends a single HTTP request with the transport settings held in
    config (TLS verification and proxies) and hands the exchange to the
    config's rest log callback, if one is set.

    Returns:
        requests.Response"""
    log.debug('%s %s', method, url)
    res = requests.request(method, url, verify=config.verify_ssl,
                           proxies=config.proxies, **kwargs)
    log.debug('%s %s -> %s', method, url, res.status_code)
    if config.rest_log is not None:
        config.rest_log(res.request, res)
    return res


def configure(config):
    """Configure makes an initial request to the /v2/info API endpoint to
    configure the authentication and other endpoints.

    Args:
        config (Config)

    Returns:
        Config: the original config argument"""
    config.info = None
    url = '/'.join([config.base_url.rstrip('/'), 'v2/info'])
    try:
        res = send_request(config, 'GET', url)
        res.raise_for_status()
    except HTTPError as e:
        raise ResponseException('Error configuring {}.'
                                .format(e.response.status_code), e)
    config.info = res.json()
    return config


def build_authentication_request(config):
    """Builds an OAuth authentication request to send to UAA. The rules are as
    follows:

    1) if we hold a refresh_token, then use grant_type=refresh_token
    2) else if the credentials carry a username and password, then use
       grant_type=password
    3) else raise RequestException

    Args:
        config (Config)

    Returns:
        dict: containing the parameters for the UAA OAuth request
    """
    data = {'client_id': config.client_id,
            'client_secret': config.client_secret}
    if config.auth is not None and config.auth.get('refresh_token'):
        data['grant_type'] = 'refresh_token'
        data['refresh_token'] = config.auth['refresh_token']
    elif isinstance(config.credentials, PasswordCredentials):
        data['grant_type'] = 'password'
        data['username'] = config.credentials.username
        data['password'] = config.credentials.password
    else:
        raise RequestException('Unable to build authentication request.')
    return data


def authenticate(config, data):
    """Authenticate performs a login against UAA.

    Args:
        config (Config): configuration containing login endpoint
        data (dict): a dictionary containing the login credentials
            created by ``build_authentication_request()``
    Returns:
        Config: the original config argument"""
    config.assert_info()
    grant_type = data.get('grant_type')
    headers = {'Content-Type': 'application/x-www-form-urlencoded',
               'Accept': 'application/json'}
    data = urlencode(data).encode('utf-8')
    url = '/'.join([config.info['token_endpoint'].rstrip('/'), 'oauth/token'])
    try:
        res = send_request(config, 'POST', url, data=data, headers=headers)
        res.raise_for_status()
    except HTTPError as e:
        raise ResponseException('Error authenticating {}.'
                                .format(e.response.status_code), e)
    auth = res.json()
    if not auth.get('refresh_token') and config.auth is not None:
        auth['refresh_token'] = config.auth.get('refresh_token')
    config.auth = auth
    log.debug('authenticated with grant_type=%s', grant_type)
    return config


class Config(object):
    """Config encapsulates the settings for a single Cloud Foundry API
    endpoint"""

    base_url = None
    """The API base url"""

    version = 'v2'
    """The API version"""

    client_id = os.getenv('CF_CLIENT_ID', 'cf')
    """The OAuth client ID; read from environment var CF_CLIENT_ID;
    defaults to 'cf'
    """

    client_secret = os.getenv('CF_CLIENT_SECRET', '')
    """The OAuth client secret; read from environment var CF_CLIENT_SECRET;
    defaults to ''
    """

    auto_refresh_token = os.getenv('CF_AUTO_REFRESH_TOKEN', 'true') != 'false'
    """Indicates whether to attempt to automatically refresh the API
    access_token
    """

    credentials = None
    """One of PasswordCredentials, TokenCredentials or
    CachedTokenCredentials"""

    verify_ssl = True
    """Indicates whether TLS certificates are verified"""

    proxies = None
    """Optional ``requests`` proxies mapping"""

    rest_log = None
    """Optional callable invoked with (request, response) for every HTTP
    exchange"""

    debug = False
    """Indicates that debug logging was requested"""

    info = None
    """Contains a dictionary of /v2/info details
    """

    auth = None
    """Contains a dictionary of UAA auth details
    """

    def set_credentials(self, credentials):
        """Installs the credentials and, for token based credentials, the
        token as the current auth.

        Args:
            credentials: one of the *Credentials tuples

        Returns:
            Config"""
        self.credentials = credentials
        if credentials.client_id is not None:
            self.client_id = credentials.client_id
            self.client_secret = credentials.client_secret
        if isinstance(credentials, (TokenCredentials, CachedTokenCredentials)):
            self.auth = {'access_token': credentials.token.value,
                         'refresh_token': credentials.token.refresh_token}
        return self

    def assert_info(self):
        if self.info is None:
            raise ConfigException('Config info is required. '
                                  'Run `configure()\' on this and try again.')

    def assert_auth(self):
        self.assert_info()
        if self.auth is None:
            raise ConfigException('Config auth is required. Run '
                                  '`authenticate()\' on this and try again.')


class Resource(object):
    """Resource wraps a v2 API object, providing attribute access to
    ``entity`` and ``metadata`` keys such as guid, name, label"""

    data = None

    def __init__(self, data):
        self.data = data

    def get(self, name):
        """Access a key from the resource's data dictionary

        If <name> matches .metadata or .entity:
            .<name> is returned
        If <name> matches *_url or *_guid:
            .entity.<name> is returned if it exists else None
        If <name> is in .entity:
            .entity.<name> is returned
        If <name> is in .metadata:
            .metadata.<name> is returned
        Else
            None is returned
        """
        if name == 'entity' or name == 'metadata':
            return self.data.get(name)
        entity = self.data.get('entity', {})
        if name.endswith('_url') or name.endswith('_guid'):
            return entity.get(name)
        elif name in entity:
            return entity[name]
        return self.data.get('metadata', {}).get(name)

    def __repr__(self):
        """Shows the guid and name/label of this object"""
        name = str(self.label or self.name)
        return '\t'.join([str(self.guid), name])

    def __getattr__(self, name):
        if name.startswith('__'):
            raise AttributeError(name)
        return self.get(name)

    def __getitem__(self, name):
        return self.get(name)

    def __contains__(self, name):
        return self.get(name) is not None


class Response(object):
    """Response wraps a v2 API response providing checks for errors and
    simplified methods for accessing returned resources."""

    resource_class = Resource

    response = None
    """Holds underlying requests.Response object"""

    data = None
    """Holds a JSON parsed dictionary of response content"""

    def __init__(self, response):
        self.response = response
        try:
            self.data = json.loads(response.content)
        except ValueError:
            self.data = {}

    def __getattr__(self, name):
        if name.startswith('__'):
            raise AttributeError(name)
        return self.data.get(name)

    @property
    def ok(self):
        """Indicates whether the response was successful"""
        return 200 <= self.response.status_code < 300

    def assert_ok(self):
        if not self.ok:
            if 'error_code' in self.data:
                msg = self.data['error_code']
            else:
                msg = str(self.response.reason)
            msg = 'HTTP {} {}'.format(self.response.status_code, msg)
            msg = 'An API error occurred: {}.'.format(msg)
            raise ResponseException(msg, self)

    @property
    def resources(self):
        """Returns a list of Resource wrapped API objects. If `resources\'
        was set, then return the full list. If only a single resource was
        returned, then wrap that resource in a list."""
        self.assert_ok()
        if 'resources' in self.data:
            return [self.resource_class(r)
                    for r in self.data.get('resources', [])]
        else:
            return [self.resource_class(self.data)]

    @property
    def resource(self):
        """Returns a Resource wrapped API object. If `resources\' was set,
        then return the first list item; if the list is empty, then raise
        `ResponseException\' to indicate this."""
        self.assert_ok()
        if 'resources' in self.data:
            try:
                return self.resource_class(next(iter(self.data['resources'])))
            except StopIteration:
                raise ResponseException('Resource not found.', self)
        else:
            return self.resource_class(self.data)


class Request(object):
    """Request wraps an API request by encapsulating the request components
    such as HTTP method and URL"""

    response_class = Response

    config = None

    url = None
    """Indicates the HTTP endpoint to request; use ``set_url()`` to control
    this value"""

    def __init__(self, config, *path, **query):
        self.config = config
        self.set_url(*path, **query)

    def set_url(self, *path, **query):
        """Sets the URL path and query string for this request. The path
        argument(s) will be
            1) joined with ``/``
            2) stripped of any leading ``scheme://hostname/v\\d+`` prefix
            3) joined with the configured version
            4) have the query string overwritten to match ``**query``, unless
               the path already carries one and no query is specified

        Args:
            *path: a list of string URL segments
            **query: key value pairs that should be encoded into the URL string

        Returns:
            Request"""
        path = '/'.join(list(path))
        # next_url values (/v2/apps?page=2) are passed through as paths
        path = re.sub(r'^(https?://[^/]+)?/?(v\d+/)?', '', path)
        path, _, qs = path.partition('?')
        parts = list(urlsplit(self.config.base_url))
        parts[2] = '/'.join([parts[2].rstrip('/'), self.config.version, path])
        parts[3] = urlencode(query, doseq=True) if query else qs
        self.url = urlunsplit(parts)
        return self

    def send(self, method, retries=1):
        """Sends this request with the given HTTP method. The access token
        is refreshed beforehand when it has expired and a way to get a new
        one exists.

        Args:
            method (str): GET, POST, PUT, DELETE, etc.

        Returns:
            Response: this is an instance of self.response_class()"""
        if self.config.auto_refresh_token and self.should_authenticate():
            data = build_authentication_request(self.config)
            authenticate(self.config, data)
        self.config.assert_auth()
        auth = 'bearer {}'.format(self.config.auth['access_token'])
        headers = {'Authorization': auth,
                   'Accept': 'application/json'}
        res = send_request(self.config, method, self.url, headers=headers)
        if res.status_code == 401 and retries > 0 and \
                self.can_authenticate():
            configure(self.config)
            authenticate(self.config,
                         build_authentication_request(self.config))
            return self.send(method, retries - 1)
        return self.response_class(res)

    def can_authenticate(self):
        auth = self.config.auth or {}
        return bool(auth.get('refresh_token')) or \
            isinstance(self.config.credentials, PasswordCredentials)

    def should_authenticate(self):
        if self.config.auth is None:
            return self.can_authenticate()
        if not self.config.auth.get('refresh_token'):
            return False
        try:
            return is_expired(self.config.auth['access_token'], time.time())
        except RequestException:
            # opaque tokens are sent as is; a 401 triggers the refresh
            return False

    def get(self):
        """A shortcut that sends this request using HTTP GET method"""
        return self.send('GET')


def iterate_all_resources(req, verbose=False):
    """Gets all the pages of a resource as specified in the given request.
    It invokes the given request as a GET and follows the ``next_url``
    attribute on each page Response until there are no more pages.

    Args:
        req (Request): the API request object that should be followed
        verbose (bool): indicates to log each page url

    Yields:
        Resource"""
    while True:
        if verbose:
            log.debug('fetching %s', req.url)
        res = req.get()
        for r in res.resources:
            yield r
        if res.next_url is None:
            break
        req.set_url(res.next_url)


class CloudFoundryClient(object):
    """CloudFoundryClient reads the organizations, spaces, applications,
    services and service offerings visible to the authenticated user."""

    config = None

    def __init__(self, config):
        self.config = config

    def request(self, *path, **query):
        return Request(self.config, *path, **query)

    def login(self):
        """Performs the password grant against UAA with the configured
        credentials.

        Returns:
            dict: the UAA token response"""
        if not isinstance(self.config.credentials, PasswordCredentials):
            raise ConfigException('login() requires username and password '
                                  'credentials.', self.config)
        self.config.auth = None
        authenticate(self.config, build_authentication_request(self.config))
        return self.config.auth

    def get_access_token(self):
        """Returns:
            OAuth2AccessToken|None"""
        if self.config.auth is None:
            return None
        return OAuth2AccessToken(self.config.auth['access_token'],
                                 self.config.auth.get('refresh_token'))

    def list_resources(self, *path, **query):
        return iterate_all_resources(self.request(*path, **query),
                                     self.config.debug)

    def get_relation(self, resource, name):
        """Returns the inlined ``name`` relation of resource, following
        ``<name>_url`` when the relation was not inlined.

        Returns:
            Resource|list[Resource]|None"""
        value = resource.get(name)
        if isinstance(value, dict):
            return Resource(value)
        if isinstance(value, list):
            return [Resource(v) for v in value]
        url = resource.get(name + '_url')
        if url is None:
            return None
        res = self.request(url).get()
        if 'resources' not in res.data:
            return res.resource
        resources = res.resources
        while res.next_url is not None:
            res = self.request(res.next_url).get()
            resources.extend(res.resources)
        return resources

    def get_cloud_info(self):
        """Returns:
            CloudInfo"""
        self.config.assert_info()
        info = self.config.info
        return CloudInfo(info.get('name'), info.get('version'),
                         info.get('description'))

    def get_organizations(self):
        """Returns:
            list[CloudOrganization]"""
        return [CloudOrganization(r.guid, r.name)
                for r in self.list_resources('organizations')]

    def get_spaces(self):
        """Returns:
            list[CloudSpace]"""
        spaces = []
        for r in self.list_resources('spaces',
                                     **{'inline-relations-depth': 1}):
            org = self.get_relation(r, 'organization')
            spaces.append(CloudSpace(
                r.guid, r.name, CloudOrganization(org.guid, org.name)))
        return spaces

    def get_applications(self):
        """Returns:
            list[CloudApplication]"""
        apps = []
        for r in self.list_resources('apps', **{'inline-relations-depth': 2}):
            services = []
            for binding in self.get_relation(r, 'service_bindings') or []:
                instance = self.get_relation(binding, 'service_instance')
                if instance is not None:
                    services.append(instance.name)
            apps.append(CloudApplication(
                r.guid, r.name, Staging(r.buildpack, r.command), services))
        return apps

    def get_services(self):
        """Returns:
            list[CloudService]"""
        services = []
        for r in self.list_resources('service_instances',
                                     **{'inline-relations-depth': 2}):
            label = plan_name = None
            plan = self.get_relation(r, 'service_plan')
            if plan is not None:
                plan_name = plan.name
                offering = self.get_relation(plan, 'service')
                if offering is not None:
                    label = offering.label
            services.append(CloudService(r.guid, r.name, label, plan_name))
        return services

    def get_service_offerings(self):
        """Returns:
            list[CloudServiceOffering]"""
        offerings = []
        for r in self.list_resources('services',
                                     **{'inline-relations-depth': 1}):
            plans = [CloudServicePlan(p.guid, p.name)
                     for p in self.get_relation(r, 'service_plans') or []]
            offerings.append(CloudServiceOffering(
                r.guid, r.label, r.description, plans))
        return offerings


class TokensFile(object):
    """TokensFile looks up previously stored OAuth tokens by target URI.

    Tokens are read from ``tokens.json`` in the CF home directory, a JSON
    object keyed by target URI. When the target has no entry there, the
    CF CLI's ``config.json`` is used if its ``Target`` matches."""

    def __init__(self, cf_home=None):
        if cf_home is None:
            cf_home = os.getenv('CF_HOME') or os.path.expanduser('~')
        self.directory = os.path.join(cf_home, '.cf')

    @property
    def tokens_path(self):
        return os.path.join(self.directory, 'tokens.json')

    @property
    def cli_config_path(self):
        return os.path.join(self.directory, 'config.json')

    def _load(self, path):
        if not os.path.isfile(path):
            return {}
        with open(path) as f:
            try:
                return json.load(f)
            except ValueError as e:
                raise ConfigException(
                    'Unable to read {}: {}'.format(path, e))

    def retrieve_token(self, target):
        """Looks up the stored token for target

        Args:
            target (str): the target URI, compared without trailing slashes

        Returns:
            OAuth2AccessToken|None"""
        target = target.rstrip('/')
        for uri, entry in self._load(self.tokens_path).items():
            if uri.rstrip('/') == target and entry.get('access_token'):
                return parse_token(entry['access_token'],
                                   entry.get('refresh_token'))
        config = self._load(self.cli_config_path)
        if (config.get('Target') or '').rstrip('/') == target and \
                config.get('AccessToken'):
            return parse_token(config['AccessToken'],
                               config.get('RefreshToken'))
        return None


def new_cloud_foundry_client(credentials, target_url, proxy=None,
                             trust_self_signed_certs=False, rest_log=None,
                             debug=False):
    """Creates a Config from the given settings, configures it against the
    target's /v2/info endpoint and returns a new CloudFoundryClient.
    No login is performed; see ``CloudFoundryClient.login()``.

    Args:
        credentials: one of the *Credentials tuples
        target_url (str): Cloud Controller base URL
        proxy (dict|None): ``requests`` proxies mapping
        trust_self_signed_certs (bool): disables TLS certificate checks
        rest_log (callable|None): called with (request, response) for every
            HTTP exchange
        debug (bool): logs each request and page fetch

    Returns:
        CloudFoundryClient"""
    config = Config()
    config.base_url = target_url
    config.verify_ssl = not trust_self_signed_certs
    config.proxies = proxy
    config.rest_log = rest_log
    config.debug = debug
    config.set_credentials(credentials)
    if trust_self_signed_certs:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    return CloudFoundryClient(configure(config))
