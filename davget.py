# Copyright (c) 2026 Jifeng Wu
# Licensed under the MIT License. See LICENSE file in the project root for full license information.
import argparse
import logging
import os
import posixpath
import re

import xml.etree.ElementTree as ElementTree
from typing import Iterator, Optional, Sequence, Set, Tuple
from urllib.parse import SplitResult, unquote, urljoin, urlsplit, urlunsplit

import requests
from cowlist import COWList
from fspathverbs import Root, Parent, Current, Child, compile_to_fspathverbs

logger = logging.getLogger(__name__)

PROPFIND_BODY = '''<?xml version="1.0" encoding="utf-8" ?>
<D:propfind xmlns:D="DAV:">
  <D:prop>
    <D:displayname/>
    <D:resourcetype/>
  </D:prop>
</D:propfind>'''

_CONTROL_CHARACTERS = re.compile(r'[\x00-\x1f\x7f]')
_INVALID_PERCENT_ESCAPE = re.compile(r'%(?![0-9A-Fa-f]{2})')


class DAVGetError(Exception):
    """Base class for errors talking to a WebDAV server."""
    pass


class UnexpectedStatusCode(DAVGetError):
    """
    The server answered with a status code other than the expected one.

    Args:
        status_code (int): The status code received.
    """

    def __init__(
            self,
            status_code,  # type: int
    ):
        super(UnexpectedStatusCode, self).__init__('unexpected status code: %d' % (status_code,))
        self.status_code = status_code  # type: int


class MultistatusDecodeError(DAVGetError):
    """The body of a PROPFIND response is not a DAV: multistatus document."""
    pass


class Prop(object):
    """
    Properties of a remote resource as returned by PROPFIND.

    Args:
        display_name (str): Server supplied display name, empty if absent.
        is_collection (bool): Whether the resource type carries a collection marker.
    """

    def __init__(
            self,
            display_name='',  # type: str
            is_collection=False,  # type: bool
    ):
        self.display_name = display_name  # type: str
        self.is_collection = is_collection  # type: bool

    def __repr__(self):
        return '%s(display_name=%r, is_collection=%r)' % (
            self.__class__.__name__,
            self.display_name,
            self.is_collection,
        )

    def __reduce__(self):
        return self.__class__, (self.display_name, self.is_collection)

    def __hash__(self):
        return hash(self.__reduce__())

    def __eq__(self, other):
        return self.__reduce__() == other.__reduce__()


class Propstat(object):
    """
    A Prop paired with the status line the server reported for it.

    Args:
        prop (Prop): The properties.
        status (str): HTTP status line, e.g. 'HTTP/1.1 200 OK'.
    """

    def __init__(
            self,
            prop,  # type: Prop
            status='',  # type: str
    ):
        self.prop = prop  # type: Prop
        self.status = status  # type: str

    def __repr__(self):
        return '%s(prop=%r, status=%r)' % (self.__class__.__name__, self.prop, self.status)

    def __reduce__(self):
        return self.__class__, (self.prop, self.status)

    def __hash__(self):
        return hash(self.__reduce__())

    def __eq__(self, other):
        return self.__reduce__() == other.__reduce__()


class Response(object):
    """
    One remote resource in a multistatus document.

    Args:
        href (str): Resource href, either a server-relative path or an absolute URL.
        propstats (Sequence[Propstat]): Propstat entries in document order.
    """

    def __init__(
            self,
            href,  # type: str
            propstats=(),  # type: Sequence[Propstat]
    ):
        self.href = href  # type: str
        self.propstats = tuple(propstats)  # type: Tuple[Propstat, ...]

    @property
    def prop(self):
        # type: () -> Prop
        """Properties from the first propstat; a resource without one has empty properties."""
        if self.propstats:
            return self.propstats[0].prop
        else:
            return Prop()

    def __repr__(self):
        return '%s(href=%r, propstats=%r)' % (self.__class__.__name__, self.href, self.propstats)

    def __reduce__(self):
        return self.__class__, (self.href, self.propstats)

    def __hash__(self):
        return hash(self.__reduce__())

    def __eq__(self, other):
        return self.__reduce__() == other.__reduce__()


class Multistatus(object):
    """
    Decoded body of a 207 Multi-Status response.

    Args:
        responses (Sequence[Response]): Responses in server order.
    """

    def __init__(
            self,
            responses=(),  # type: Sequence[Response]
    ):
        self.responses = tuple(responses)  # type: Tuple[Response, ...]

    def __repr__(self):
        return '%s(responses=%r)' % (self.__class__.__name__, self.responses)

    def __reduce__(self):
        return self.__class__, (self.responses,)

    def __hash__(self):
        return hash(self.__reduce__())

    def __eq__(self, other):
        return self.__reduce__() == other.__reduce__()


class GetAction(object):
    """Base class for actions required in recursive get (download) operations."""
    pass


class DownloadRemoteFile(GetAction):
    """
    Describes an action to download a remote file.

    Args:
        remote_file_url (str): Absolute URL of the remote file.
        relative_local_file_path_components (Sequence[str]): Relative local file path components to save file as.
    """

    def __init__(
            self,
            remote_file_url,  # type: str
            relative_local_file_path_components,  # type: Sequence[str]
    ):
        self.remote_file_url = remote_file_url  # type: str
        self.relative_local_file_path_components = relative_local_file_path_components  # type: Sequence[str]

    def __repr__(self):
        return '%s(remote_file_url=%r, relative_local_file_path_components=%r)' % (
            self.__class__.__name__,
            self.remote_file_url,
            self.relative_local_file_path_components,
        )

    def __reduce__(self):
        return self.__class__, (self.remote_file_url, self.relative_local_file_path_components)

    def __hash__(self):
        return hash(self.__reduce__())

    def __eq__(self, other):
        return self.__reduce__() == other.__reduce__()


class CreateLocalDirectory(GetAction):
    """
    Describes an action to create a local directory mirroring a remote collection.

    Args:
        remote_directory_url (str): Absolute URL of the remote collection.
        relative_local_directory_path_components (Sequence[str]): Relative local directory path components to make.
    """

    def __init__(
            self,
            remote_directory_url,  # type: str
            relative_local_directory_path_components,  # type: Sequence[str]
    ):
        self.remote_directory_url = remote_directory_url  # type: str
        self.relative_local_directory_path_components = relative_local_directory_path_components  # type: Sequence[str]

    def __repr__(self):
        return '%s(remote_directory_url=%r, relative_local_directory_path_components=%r)' % (
            self.__class__.__name__,
            self.remote_directory_url,
            self.relative_local_directory_path_components,
        )

    def __reduce__(self):
        return self.__class__, (self.remote_directory_url, self.relative_local_directory_path_components)

    def __hash__(self):
        return hash(self.__reduce__())

    def __eq__(self, other):
        return self.__reduce__() == other.__reduce__()


def decode_multistatus(
        content,  # type: bytes
):
    # type: (...) -> Multistatus
    """
    Decode the XML body of a PROPFIND response.

    Args:
        content (bytes): Raw response body.

    Returns:
        Multistatus: The decoded document.

    Raises:
        MultistatusDecodeError: If the body is not well-formed XML or its root is not DAV: multistatus.
    """
    try:
        tree = ElementTree.fromstring(content)
    except ElementTree.ParseError as e:
        raise MultistatusDecodeError('Malformed multistatus XML: %s' % (e,)) from e

    if tree.tag != '{DAV:}multistatus':
        raise MultistatusDecodeError('Expected element {DAV:}multistatus, found %s' % (tree.tag,))

    responses = []
    for dav_response_node in tree.findall('{DAV:}response'):
        dav_href_node = dav_response_node.find('{DAV:}href')
        if dav_href_node is not None and dav_href_node.text is not None:
            href = dav_href_node.text.strip()
        else:
            href = ''

        propstats = []
        for dav_propstat_node in dav_response_node.findall('{DAV:}propstat'):
            display_name = ''
            is_collection = False

            dav_prop_node = dav_propstat_node.find('{DAV:}prop')
            if dav_prop_node is not None:
                dav_displayname_node = dav_prop_node.find('{DAV:}displayname')
                if dav_displayname_node is not None:
                    display_name = ''.join(dav_displayname_node.itertext())

                dav_resourcetype_node = dav_prop_node.find('{DAV:}resourcetype')
                if dav_resourcetype_node is not None:
                    is_collection = dav_resourcetype_node.find('{DAV:}collection') is not None

            dav_status_node = dav_propstat_node.find('{DAV:}status')
            if dav_status_node is not None and dav_status_node.text is not None:
                status = dav_status_node.text.strip()
            else:
                status = ''

            propstats.append(Propstat(prop=Prop(display_name=display_name, is_collection=is_collection), status=status))

        responses.append(Response(href=href, propstats=propstats))

    return Multistatus(responses=responses)


def parse_url(
        url,  # type: str
):
    # type: (...) -> SplitResult
    """
    Parse an absolute URL or a server-relative href.

    Raises:
        ValueError: On control characters, malformed percent escapes, or a malformed authority.
    """
    if _CONTROL_CHARACTERS.search(url) or _INVALID_PERCENT_ESCAPE.search(url):
        raise ValueError('Invalid URL: %r' % (url,))

    split_result = urlsplit(url)
    # Raises ValueError on a non-numeric or out of range port
    split_result.port
    return split_result


def remote_path_to_remote_path_components(
        remote_path,  # type: str
):
    # type: (...) -> COWList[str]
    """
    Split and normalize a decoded remote (posix style) path string into a list of path components.

    Args:
        remote_path (str): The remote file/directory path string.

    Returns:
        COWList[str]: List of normalized path components.
    """
    components = COWList()
    verbs = compile_to_fspathverbs(path=remote_path, split=posixpath.split)
    for verb in verbs:
        if isinstance(verb, Root):
            components = components.clear()
        elif isinstance(verb, Parent):
            if components:
                components, _ = components.pop()
            else:
                raise ValueError('Invalid remote path: %s' % remote_path)
        elif isinstance(verb, Current):
            pass
        elif isinstance(verb, Child):
            components = components.append(verb.child)

    return components


def name_to_local_path_component(
        name,  # type: str
):
    # type: (...) -> str
    """
    Ensure a name derived from the server denotes exactly one entry inside the local directory.

    Raises:
        ValueError: If the name is empty, '.', '..', absolute, or contains a path separator.
    """
    if not name:
        raise ValueError('Empty local name')

    verbs = [
        verb for verb in compile_to_fspathverbs(path=name, split=os.path.split) if not isinstance(verb, Current)
    ]
    if len(verbs) == 1 and isinstance(verbs[0], Child) and verbs[0].child == name:
        return name
    else:
        raise ValueError('Unsafe local name: %r' % (name,))


def iterate_child_entries(
        request_url,  # type: SplitResult
        multistatus,  # type: Multistatus
):
    # type: (...) -> Iterator[Tuple[Response, str, COWList[str]]]
    """
    Iterate over the responses describing children of the requested collection.

    The response whose path equals the request path describes the collection itself and is skipped.
    Responses with invalid hrefs are skipped silently.

    Args:
        request_url (SplitResult): The URL the PROPFIND was sent to.
        multistatus (Multistatus): The decoded PROPFIND response.

    Yields:
        Tuple[Response, str, COWList[str]]: (response, absolute child URL, decoded remote path components).
    """
    request_path = unquote(request_url.path or '/')
    for response in multistatus.responses:
        try:
            href_url = parse_url(response.href)
            if href_url.path.startswith('/'):
                href_path = href_url.path
            else:
                href_path = urljoin(request_url.path or '/', href_url.path)
            remote_path_components = remote_path_to_remote_path_components(remote_path=unquote(href_path))
        except ValueError:
            continue

        if unquote(href_path) == request_path:
            continue

        child_url = urlunsplit((request_url.scheme, request_url.netloc, href_path, href_url.query, ''))
        yield response, child_url, remote_path_components


class DAVGetClient(object):
    def __init__(
            self,
            session=None,  # type: Optional[requests.Session]
    ):
        """
        Initialize the client.

        Args:
            session (requests.Session, optional): Session to send requests through. A new one is made if omitted.
        """
        if session is None:
            self.session = requests.session()
        else:
            self.session = session

    # These methods directly make requests
    def propfind(
            self,
            url,  # type: str
    ):
        # type: (...) -> Multistatus
        """
        List a collection and its immediate children.

        Args:
            url (str): Absolute URL of the collection.

        Returns:
            Multistatus: The decoded response.

        Raises:
            UnexpectedStatusCode: If the server does not answer 207.
            MultistatusDecodeError: If the body cannot be decoded.
        """
        logger.debug('PROPFIND %s', url)
        response = self.session.request(
            method='PROPFIND',
            url=url,
            headers={'Depth': '1', 'Content-Type': 'application/xml'},
            data=PROPFIND_BODY.encode('utf-8'),
        )

        if response.status_code != 207:
            raise UnexpectedStatusCode(response.status_code)

        return decode_multistatus(response.content)

    def download_file(
            self,
            url,  # type: str
            local_file_path,  # type: str
    ):
        """
        Stream a remote file into a local file. The local file is only created once the server answers 200.

        Args:
            url (str): Absolute URL of the remote file.
            local_file_path (str): Where to write it.
        """
        logger.debug('GET %s', url)
        response = self.session.request(
            method='GET',
            url=url,
            stream=True,
        )

        try:
            if response.status_code != 200:
                raise UnexpectedStatusCode(response.status_code)

            with open(local_file_path, 'wb') as f:
                for chunk in response.iter_content(chunk_size=None):
                    f.write(chunk)
        finally:
            response.close()

    # These methods wrap methods that directly make requests
    def iterate_get_actions(
            self,
            url,  # type: str
            relative_local_path_prefix=COWList(),  # type: COWList[str]
            failed_relative_local_directories=None,  # type: Optional[Set[COWList[str]]]
    ):
        # type: (...) -> Iterator[GetAction]
        """
        Generate the actions required to mirror a remote collection, depth-first in server order.

        Errors listing the collection at `url` itself propagate. Errors listing a nested collection are logged
        and that collection is skipped.

        Args:
            url (str): Absolute URL of the remote collection.
            relative_local_path_prefix (COWList[str], optional): Relative local path prefix for this level.
            failed_relative_local_directories (Set[COWList[str]], optional): Local directories the consumer could
                not create. Filled in by the consumer while iterating; their contents are not listed.

        Yields:
            GetAction: Either DownloadRemoteFile or CreateLocalDirectory.
        """
        if failed_relative_local_directories is None:
            failed_relative_local_directories = set()

        request_url = parse_url(url)
        multistatus = self.propfind(url)
        for get_action in self.iterate_get_actions_from_multistatus(
                request_url=request_url,
                multistatus=multistatus,
                relative_local_path_prefix=relative_local_path_prefix,
                failed_relative_local_directories=failed_relative_local_directories,
        ):
            yield get_action

    def iterate_get_actions_from_multistatus(
            self,
            request_url,  # type: SplitResult
            multistatus,  # type: Multistatus
            relative_local_path_prefix,  # type: COWList[str]
            failed_relative_local_directories,  # type: Set[COWList[str]]
    ):
        # type: (...) -> Iterator[GetAction]
        for response, child_url, remote_path_components in iterate_child_entries(
                request_url=request_url,
                multistatus=multistatus,
        ):
            prop = response.prop
            if prop.display_name:
                name = prop.display_name
            elif remote_path_components:
                name = remote_path_components[-1]
            else:
                name = ''

            try:
                local_name = name_to_local_path_component(name)
            except ValueError as e:
                logger.warning('Skipping %s: %s', child_url, e)
                continue

            relative_local_path = relative_local_path_prefix.append(local_name)

            if prop.is_collection:
                # List before creating the local directory, so an unreadable collection leaves nothing behind
                try:
                    child_multistatus = self.propfind(child_url)
                except (requests.RequestException, DAVGetError) as e:
                    logger.error('Error listing collection %s: %s', child_url, e)
                    continue

                yield CreateLocalDirectory(
                    remote_directory_url=child_url,
                    relative_local_directory_path_components=relative_local_path,
                )

                if relative_local_path in failed_relative_local_directories:
                    continue

                for get_action in self.iterate_get_actions_from_multistatus(
                        request_url=urlsplit(child_url),
                        multistatus=child_multistatus,
                        relative_local_path_prefix=relative_local_path,
                        failed_relative_local_directories=failed_relative_local_directories,
                ):
                    yield get_action
            else:
                yield DownloadRemoteFile(
                    remote_file_url=child_url,
                    relative_local_file_path_components=relative_local_path,
                )

    # These methods operate on URLs given by the user
    def ls(
            self,
            url,  # type: str
    ):
        # type: (...) -> str
        """
        List the names of the children of a remote collection. Used for the '-l' option.

        Children without a display name are listed by their raw href.

        Args:
            url (str): Absolute URL of the remote collection.

        Returns:
            str: One name per line, in server order.
        """
        request_url = parse_url(url)
        multistatus = self.propfind(url)

        names = []
        for response, _, _ in iterate_child_entries(request_url=request_url, multistatus=multistatus):
            names.append(response.prop.display_name or response.href)

        return '\n'.join(names)

    def get_recursive(
            self,
            url,  # type: str
            local_directory_path='.',  # type: str
    ):
        """
        Download a remote collection recursively into a local directory. Used for the '-r' option.

        Failures on individual entries are logged and skipped; failures listing `url` itself propagate.

        Args:
            url (str): Absolute URL of the remote collection.
            local_directory_path (str): Where to create downloaded files/directories.
        """
        failed_relative_local_directories = set()  # type: Set[COWList[str]]
        for get_action in self.iterate_get_actions(
                url=url,
                failed_relative_local_directories=failed_relative_local_directories,
        ):
            if isinstance(get_action, CreateLocalDirectory):
                relative_local_directory_path_components = get_action.relative_local_directory_path_components
                local_directory_to_create_path = os.path.join(
                    local_directory_path,
                    *relative_local_directory_path_components
                )
                try:
                    if not os.path.isdir(local_directory_to_create_path):
                        os.mkdir(local_directory_to_create_path, 0o755)
                except OSError as e:
                    logger.error('Error creating directory %s: %s', local_directory_to_create_path, e)
                    failed_relative_local_directories.add(relative_local_directory_path_components)
                    continue
                print('%s -> %s' % (get_action.remote_directory_url, local_directory_to_create_path))
            elif isinstance(get_action, DownloadRemoteFile):
                remote_file_url = get_action.remote_file_url
                local_file_path = os.path.join(local_directory_path, *get_action.relative_local_file_path_components)
                try:
                    self.download_file(url=remote_file_url, local_file_path=local_file_path)
                except (requests.RequestException, DAVGetError, OSError) as e:
                    logger.error('Error downloading file %s: %s', remote_file_url, e)
                    continue
                print('%s -> %s' % (remote_file_url, local_file_path))

    def get_file(
            self,
            url,  # type: str
            local_directory_path='.',  # type: str
    ):
        # type: (...) -> str
        """
        Download a single remote file, named after the last segment of its URL path. Used by default.

        Args:
            url (str): Absolute URL of the remote file.
            local_directory_path (str): Where to save the file.

        Returns:
            str: Path of the local file written.
        """
        request_url = parse_url(url)
        file_name = name_to_local_path_component(posixpath.basename(unquote(request_url.path)))
        local_file_path = os.path.join(local_directory_path, file_name)
        self.download_file(url=url, local_file_path=local_file_path)
        print('%s -> %s' % (url, local_file_path))
        return local_file_path


def main(argv=None):
    parser = argparse.ArgumentParser(description='Download files and directories from a WebDAV server')
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument('-l', '--list', action='store_true', help='List contents of the WebDAV URL')
    mode_group.add_argument(
        '-r',
        '--recursive',
        action='store_true',
        help='Recursively download file(s) from the WebDAV URL'
    )
    parser.add_argument(
        '-O',
        '--local-directory-path',
        type=str,
        default='.',
        help='Local directory where to save (default: .)'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Log every request')
    parser.add_argument('url', type=str, help='WebDAV URL')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s: %(message)s',
    )

    client = DAVGetClient()

    if args.list:
        try:
            output = client.ls(url=args.url)
        except (requests.RequestException, DAVGetError, ValueError) as e:
            print('Error listing URL: %s' % (e,))
            return
        print(output)
    elif args.recursive:
        try:
            client.get_recursive(url=args.url, local_directory_path=args.local_directory_path)
        except (requests.RequestException, DAVGetError, ValueError) as e:
            print('Error downloading recursively: %s' % (e,))
    else:
        try:
            client.get_file(url=args.url, local_directory_path=args.local_directory_path)
        except (requests.RequestException, DAVGetError, OSError, ValueError) as e:
            print('Error downloading file: %s' % (e,))


if __name__ == '__main__':
    main()
