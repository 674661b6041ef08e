# pylint: disable=line-too-long
'''
Script postXML.py
A script to POST one or more XML documents, read from files, to a URL.
Path specifications on the command line (e.g. ./order/status=NEW or .//patient/@id=1234) set the text,
or an attribute, of every element that matches the path before the document is posted.


    SYNOPSIS
    $ python postXML.py -u url|--url=url
        [-T timeout|--timeout=timeout]
        [-C contentType|--content-type=contentType]
        [-v loggingLevel|--verbose=logingLevel]
        [-L logDir|--logDir=logDir]
        [-l logfile|--logfile=logfile]
        [xpath=value]... filename...


    REQUIRED
    -u url|--url=url
    The URL the documents are POSTed to.


    OPTIONS
    -T timeout|--timeout=timeout
    The number of seconds to wait for the response (default=wait forever).

    -C contentType|--content-type=contentType
    The Content-Type of the request (default="text/plain").

    -v loggingLevel|--verbose=loggingLevel
    Set the level of logging that you want.

    -L logDir|--logDir=logDir
    The directory where the log file will be created (default=".").

    -l logfile|--logfile=logfile
    The name of a log file where you want all messages captured.


    PATH SPECIFICATIONS
    xpath=value arguments must come before the filenames.
    A path is an XPath 1.0 expression evaluated from the document element (e.g. ./status, //item[contains(@code,'A')])
    or an absolute path starting with the document element (e.g. /order/status).
    It must select a node set. Elements have their text set, attributes and text nodes have their value set.
    Namespace prefixes declared in the document can be used in the path.
    Elements in a default namespace have no prefix, so match them with *[local-name()='name'].
'''

# pylint: disable=invalid-name

import os
import sys
import logging
import argparse
import re

from lxml import etree
import requests

# This next section is plagurised from /usr/include/sysexits.h
EX_OK = 0               # successful termination

EX_USAGE = 64           # command line usage error
EX_DATAERR = 65         # data format error
EX_NOINPUT = 66         # cannot open input
EX_UNAVAILABLE = 69     # service unavailable
EX_PROTOCOL = 76        # remote error in protocol

conversionSpec = re.compile(r'^(.+)=(.*)$', re.DOTALL)


class PostXMLError(Exception):
    '''
    A condition that stops the whole batch
    '''
    def __init__(self, message, exitCode):
        super().__init__(message)
        self.exitCode = exitCode


def getNamespaces(root):
    '''
    The namespace prefixes declared anywhere in the document.
    The first declaration of a prefix wins. A default namespace has no prefix, so it is not included.
    '''
    namespaces = {}
    for element in root.iter(etree.Element):
        for prefix, uri in element.nsmap.items():
            if prefix is not None and prefix not in namespaces:
                namespaces[prefix] = uri
    return namespaces


def findNodes(root, xpath, namespaces):
    '''
    Evaluate xpath from the document element. The result must be a node set
    '''
    try:
        nodes = root.xpath(xpath, namespaces=namespaces)
    except etree.XPathError as e:
        raise PostXMLError(f'Invalid xpath "{xpath}" - {e}', EX_DATAERR) from e
    if not isinstance(nodes, list):
        raise PostXMLError(f'xpath "{xpath}" does not select nodes - it evaluates to {nodes!r}', EX_DATAERR)
    return nodes


def setNode(node, value):
    '''
    Set the value of an element, attribute or text node, returning the old value
    '''
    if isinstance(node, etree._Element):
        oldValue = node.text
        node.text = value
        return oldValue
    parent = node.getparent() if hasattr(node, 'getparent') else None
    if parent is None:
        raise ValueError(f'{node!r} is not a node in the document')
    if node.is_attribute:
        parent.set(node.attrname, value)
    elif node.is_tail:
        parent.tail = value
    else:
        parent.text = value
    return str(node)


def applyConversions(root, conversions, namespaces, out=None):
    '''
    Set the value of every node that matches each xpath
    '''
    if out is None:
        out = sys.stdout
    for xpath, value in conversions:
        nodes = findNodes(root, xpath, namespaces)
        if not nodes:
            logging.warning('No match for %s', xpath)
            continue
        for i, node in enumerate(nodes):
            try:
                oldValue = setNode(node, value)
            except ValueError as e:
                raise PostXMLError(f'Cannot set {xpath} - {e}', EX_DATAERR) from e
            print(f'Setting {xpath} from {oldValue} to {value} [Match {i + 1} of {len(nodes)}]', file=out)


def postDocuments(fileNames, url, conversions, timeout=None, contentType='text/plain', out=None):
    '''
    Convert and POST each file, in order
    '''
    if out is None:
        out = sys.stdout
    for fileName in fileNames:
        print(f'POSTing {fileName}', file=out)
        try:
            tree = etree.parse(fileName)
        except etree.XMLSyntaxError as e:
            raise PostXMLError(f'File {fileName} is not valid XML - {e}', EX_DATAERR) from e
        root = tree.getroot()
        applyConversions(root, conversions, getNamespaces(root), out)
        # The whole tree, so comments and processing instructions outside the document element are kept
        docText = etree.tostring(tree, xml_declaration=True, encoding='UTF-8')

        try:
            response = requests.post(url, data=docText, headers={'Content-Type': contentType}, timeout=timeout)
        except requests.RequestException as e:
            raise PostXMLError(f'Cannot POST {fileName} to {url} - {e}', EX_UNAVAILABLE) from e
        print(response.text, file=out)
        if response.status_code != requests.codes.ok:
            raise PostXMLError(f'ERROR: Got response {response.status_code}', EX_PROTOCOL)
        logging.info('POSTed %s to %s', fileName, url)
    return EX_OK


def splitArguments(arguments):
    '''
    Split the positional arguments into xpath conversions and filenames.
    Conversions must come before the filenames and every file must exist.
    '''
    conversions = []
    fileNames = []
    for arg in arguments:
        if (match := conversionSpec.match(arg)) is not None:
            if fileNames:
                raise PostXMLError(f'xpath conversion spec, {arg}, must be before filenames', EX_USAGE)
            conversions.append((match.group(1), match.group(2)))
        else:
            fileNames.append(arg)
    if not fileNames:
        raise PostXMLError('Must specify at least one filename', EX_USAGE)
    for fileName in fileNames:
        if not os.path.isfile(fileName):
            raise PostXMLError(f'File {fileName} does not exist', EX_NOINPUT)
    return conversions, fileNames


def setupLogging(progName, loggingLevel, logDir, logFile):
    '''
    Set up logging
    '''
    logging_levels = {0:logging.CRITICAL, 1:logging.ERROR, 2:logging.WARNING, 3:logging.INFO, 4:logging.DEBUG}
    logfmt = progName + ' [%(asctime)s]: %(message)s'
    kwargs = {'format': logfmt, 'datefmt': '%d/%m/%y %H:%M:%S %p'}
    if loggingLevel is not None:    # Change the logging level from "WARN" if the -v vebose option is specified
        kwargs['level'] = logging_levels[loggingLevel]
    if logFile is not None:        # and send it to a file if the -l logfile option is specified
        with open(os.path.join(logDir, logFile), 'wt', encoding='utf-8', newline=''):
            pass
        kwargs['filename'] = os.path.join(logDir, logFile)
    logging.basicConfig(**kwargs)
    logging.debug('Logging set up')


def main(argv=None):
    '''
    The main code
    Start by parsing the command line arguements and setting up logging.
    Then convert and POST each file named in the command line
    '''

    # Set the command line options
    progName = os.path.basename(sys.argv[0])
    if progName.endswith('.py'):
        progName = progName[0:-3]        # Strip off the .py ending
    parser = argparse.ArgumentParser(description='postXML - POST XML documents to a URL')
    parser.add_argument('-u', '--url', dest='url', required=True,
                        help='The destination URL')
    parser.add_argument('-T', '--timeout', dest='timeout', type=float, metavar='timeout',
                        help='The number of seconds to wait for the response')
    parser.add_argument('-C', '--content-type', dest='contentType', default='text/plain', metavar='contentType',
                        help='The Content-Type of the request (default="text/plain")')
    parser.add_argument ('-v', '--verbose', dest='verbose', type=int, choices=range(0,5),
                         help='The level of logging\n\t0=CRITICAL,1=ERROR,2=WARNING,3=INFO,4=DEBUG')
    parser.add_argument ('-L', '--logDir', dest='logDir', default='.', metavar='logDir',
                         help='The name of the directory where the logging file will be created')
    parser.add_argument ('-l', '--logFile', dest='logFile', metavar='logfile', help='The name of a logging file')
    parser.add_argument('args', nargs='*', metavar='xpath=value|file',
                        help='xpath conversions (before the filenames) and the XML files')

    # Parse the command line
    args = parser.parse_args(argv)

    setupLogging(progName, args.verbose, args.logDir, args.logFile)

    try:
        conversions, fileNames = splitArguments(args.args)
    except PostXMLError as e:
        print(e, file=sys.stderr)
        if e.exitCode == EX_USAGE:
            parser.print_usage(sys.stderr)
        logging.shutdown()
        return e.exitCode

    try:
        status = postDocuments(fileNames, args.url, conversions, args.timeout, args.contentType)
    except PostXMLError as e:
        logging.critical('%s', e)
        logging.shutdown()
        return e.exitCode
    logging.shutdown()
    return status


if __name__ == '__main__':
    sys.exit(main())
