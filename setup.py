#!/usr/bin/env python3
from __future__ import annotations

import re
import setuptools
import pathlib
import sys
import toml

__minver__ = '3.8'
__github__ = 'https://github.com/zipinfo/zipinfo/'
__gitraw__ = 'https://raw.githubusercontent.com/zipinfo/zipinfo/'
__author__ = 'The zipinfo developers'
__slogan__ = 'Read the structure of ZIP archives without extracting them.'
__topics__ = [
    'Development Status :: 3 - Alpha',
    'Operating System :: OS Independent',
    'Programming Language :: Python :: 3 :: Only',
    'Topic :: System :: Archiving',
    'Topic :: System :: Archiving :: Compression'
]


def get_config():
    here = pathlib.Path(__file__).parent.absolute()
    sys.path.insert(0, str(here))

    import zipinfo

    def get_setup_readme(filename: str | pathlib.Path | None = None):
        if filename is None:
            filename = here.joinpath('README.md')
        with open(filename, 'r', encoding='UTF8') as README:
            def complete_link(match):
                link: str = match[1]
                if any(link.lower().endswith(xt) for xt in ('jpg', 'gif', 'png', 'svg')):
                    return F'({__gitraw__}master/{link})'
                else:
                    return F'({__github__}blob/master/{link})'
            readme = README.read()
            return re.sub(R'(?<=\])\((?!\w+://)(.*?)\)', complete_link, readme)

    ppcfg: dict[str, dict[str, list[str]]] = toml.load(str(here.joinpath('pyproject.toml')))
    extras: dict[str, list[str]] = ppcfg['tool']['zipinfo']['extras']

    return dict(
        name=zipinfo.__distribution__,
        version=zipinfo.__version__,
        long_description=get_setup_readme(),
        author=__author__,
        description=__slogan__,
        long_description_content_type='text/markdown',
        url=__github__,
        python_requires=F'>={__minver__}',
        classifiers=__topics__,
        packages=setuptools.find_packages(include=('zipinfo*',)),
        install_requires=[],
        extras_require=extras,
    )


if __name__ == '__main__':
    setuptools.setup(**get_config())
