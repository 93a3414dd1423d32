from typing import List

import torch
from lcp_torch.constraints import Contact
from lcp_torch.constraints import ContactType


class CollisionDetector:
    """Vertex against face proximity test between different skeletons.

    Faces are treated as infinite planes. A contact is produced for every
    vertex whose signed distance to a face is at most `collision_margin`.
    """

    def __init__(self, collision_margin: float = 1e-3):
        self.collision_margin = collision_margin

    def detect(self, world) -> List[Contact]:
        contacts = []
        for vertex_skeleton in world.skeletons:
            for face_skeleton in world.skeletons:
                if vertex_skeleton is face_skeleton:
                    continue
                contacts.extend(self._collide_pair(vertex_skeleton, face_skeleton))
        return contacts

    def _collide_pair(self, vertex_skeleton, face_skeleton) -> List[Contact]:
        contacts = []
        vertex_transforms = vertex_skeleton._body_transforms(vertex_skeleton.positions)
        face_transforms = face_skeleton._body_transforms(face_skeleton.positions)

        for a, vertex_body in enumerate(vertex_skeleton.bodies):
            if not vertex_body.vertices:
                continue
            T_a = vertex_transforms[a]
            points = torch.stack(vertex_body.vertices) @ T_a[:3, :3].T + T_a[:3, 3]  # [V, 3]

            for b, face_body in enumerate(face_skeleton.bodies):
                T_b = face_transforms[b]
                for face in face_body.faces:
                    face_point = T_b[:3, :3] @ face.point + T_b[:3, 3]
                    normal = T_b[:3, :3] @ face.normal
                    distances = (points - face_point) @ normal  # [V]

                    for i in torch.nonzero(distances <= self.collision_margin).flatten().tolist():
                        contacts.append(
                            Contact(
                                point=points[i].clone(),
                                normal=normal.clone(),
                                depth=-distances[i].item(),
                                contact_type=ContactType.VERTEX_FACE,
                                skeleton_a=vertex_skeleton.name,
                                body_a=a,
                                skeleton_b=face_skeleton.name,
                                body_b=b,
                                friction=min(vertex_body.friction, face_body.friction),
                                restitution=vertex_body.restitution * face_body.restitution,
                            )
                        )
        return contacts
