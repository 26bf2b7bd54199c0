# Copyright (c) 2024. Tudor Oancea
from .config import *
from .errors import *
from .models import *
from .mpc import *
from .utils import *
