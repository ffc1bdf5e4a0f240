# -*- coding: utf-8 -*-
# rasterserve - Multi-source raster model serving
#
# Copyright (c) 2026 - now
# rasterserve developers

import logging
import os
import getpass
import sys
import uuid
import tempfile

import colorlog


def logger_setup():
    # Formats for colorlog.LevelFormatter
    log_level_formats = {'DEBUG': '%(log_color)s%(msg)s (%(module)s:%(lineno)d)',
                         'INFO': '%(log_color)s%(msg)s',
                         'WARNING': '%(log_color)sWARNING: %(msg)s (%(module)s:%(lineno)d)',
                         'ERROR': '%(log_color)sERROR: %(msg)s (%(module)s:%(lineno)d)',
                         'CRITICAL': '%(log_color)sCRITICAL: %(msg)s (%(module)s:%(lineno)d)',}

    log_colors = {'DEBUG': 'blue', 'INFO': 'cyan', 'WARNING': 'bold_yellow',
                  'ERROR': 'red', 'CRITICAL': 'red,bg_white'}

    logger = logging.getLogger('rasterservelog')
    # Only set up the logger if it hasn't already been initialised before:
    if not len(logger.handlers) > 0:
        logger.setLevel(logging.DEBUG)

        # DEBUG trace in the temp dir, RASTERSERVE_LOGFILE=0 disables it
        if os.environ.get('RASTERSERVE_LOGFILE', '1') != '0':
            lfile_formatter = logging.Formatter(
                '[%(asctime)s] [%(levelname)s]\t%(message)s',
                datefmt='%Y-%m-%d %H:%M:%S')
            try:
                user_name = getpass.getuser()
            except (KeyError, OSError):  # No passwd entry, e.g. in containers
                user_name = 'rasterserve'
            uu = uuid.uuid4()
            lfile_path = os.path.join(tempfile.gettempdir(), f'{user_name}_{uu}_rasterserve.log')
            lfile_handler = logging.FileHandler(lfile_path, delay=True)
            lfile_handler.setLevel(logging.DEBUG)
            lfile_handler.setFormatter(lfile_formatter)
            logger.addHandler(lfile_handler)

        lstream_handler = colorlog.StreamHandler(sys.stdout)
        lstream_handler.setFormatter(
            colorlog.LevelFormatter(fmt=log_level_formats,
                                    log_colors=log_colors))
        # set this to logging.DEBUG to enable output for logger.debug() calls
        lstream_level = logging.INFO
        lstream_handler.setLevel(lstream_level)
        logger.addHandler(lstream_handler)

        logger.propagate = False
