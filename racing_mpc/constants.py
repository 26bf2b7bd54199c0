# Copyright (c) 2024. Tudor Oancea
__all__ = [
    "g",
    "m",
    "I_z",
    "z_CG",
    "front_axle_track",
    "rear_axle_track",
    "wheelbase",
    "cg_ratio",
    "f_r",
    "C_l_F",
    "C_l_R",
    "C_d",
    "A_front",
    "rho_air",
    "B_F",
    "C_F",
    "E_F",
    "Fz0_F",
    "eps_F",
    "B_R",
    "C_R",
    "E_R",
    "Fz0_R",
    "eps_R",
    "k_drive_F",
    "k_brake_F",
    "delta_max",
    "delta_dot_max",
    "mu",
    "k_roll_F",
    "P_max",
    "Fd_max",
    "Fb_max",
    "t_drive",
    "t_brake",
    "v_min_model",
]

g = 9.81  # gravity

# car mass and geometry
m = 230.0  # mass
I_z = 137.583  # yaw moment of inertia
z_CG = 0.295  # height of center of gravity
front_axle_track = rear_axle_track = 1.24
wheelbase = 1.5706  # distance between the two axles
cg_ratio = 0.5  # fraction of the wheelbase between CoG and front axle
f_r = 0.01  # rolling resistance coefficient

# aerodynamic parameters
C_l_F = 0.5  # front downforce coefficient
C_l_R = 0.5  # rear downforce coefficient
C_d = 0.25  # drag coefficient
A_front = 1.0  # frontal area
rho_air = 1.225  # air density

# Pacejka parameters (lateral, load sensitive)
B_F = 10.0
C_F = 1.3
E_F = 0.97
Fz0_F = 1000.0
eps_F = -0.1
B_R = 10.0
C_R = 1.3
E_R = 0.97
Fz0_R = 1000.0
eps_R = -0.1

# powertrain and brakes
k_drive_F = 0.0  # rear wheel drive
k_brake_F = 0.6  # front brake bias

# steering
delta_max = 0.5
delta_dot_max = 2.0

# model parameters
mu = 1.0  # tyre-track friction coefficient
k_roll_F = 0.5  # front roll moment distribution
P_max = 80.0e3  # maximum drive power
Fd_max = 3000.0  # maximum drive force
Fb_max = -6000.0  # maximum brake force (negative by convention)
t_drive = 0.5  # time constant for drive actuator
t_brake = 0.2  # time constant for brake actuator
v_min_model = 1.0  # speed floor for the lateral dynamics
